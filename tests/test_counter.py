import asyncio

import fakeredis.aioredis
import pytest
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from lotoemploi.infra.sql import make_async_engine
from lotoemploi.model.counter import CounterStoreError, _redis
from lotoemploi.model.counter._postgres import CounterStore
from lotoemploi.model.issuance import TicketIssuer

pytestmark = pytest.mark.anyio


async def test_read_last_defaults_to_a000(sql):
    async with sql.SessionAsync() as db:
        store = CounterStore(db=db, gated=sql.gated)
        assert await store.read_last() == "A000"
        # seeding twice keeps a single row
        assert await store.read_last() == "A000"


async def test_advance_from_current_snapshot(sql):
    async with sql.SessionAsync() as db:
        store = CounterStore(db=db, gated=sql.gated)
        snapshot = await store.read_last()
        assert await store.advance_to(snapshot, "A001") is True
        assert await store.read_last() == "A001"


async def test_advance_from_stale_snapshot_is_a_conflict(sql):
    async with sql.SessionAsync() as db:
        store = CounterStore(db=db, gated=sql.gated)
        await store.read_last()
        assert await store.advance_to("A000", "A001") is True
        assert await store.advance_to("A000", "A001") is False
        assert await store.read_last() == "A001"


async def test_racing_advances_from_same_snapshot(sql):
    async with sql.SessionAsync() as db1, sql.SessionAsync() as db2:
        s1 = CounterStore(db=db1, gated=sql.gated)
        s2 = CounterStore(db=db2, gated=sql.gated)
        snap1, snap2 = await asyncio.gather(s1.read_last(), s2.read_last())
        assert snap1 == snap2 == "A000"

        results = await asyncio.gather(
            s1.advance_to(snap1, "A001"),
            s2.advance_to(snap2, "A001"),
        )
        assert sorted(results) == [False, True]
        assert await s1.read_last() == "A001"


async def test_backend_errors_are_wrapped(tmp_path):
    # no schema created: every statement fails
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"
    )
    try:
        async with SessionAsync() as db:
            store = CounterStore(db=db, gated=gated)
            with pytest.raises(CounterStoreError):
                await store.read_last()
            with pytest.raises(CounterStoreError):
                await store.advance_to("A000", "A001")
    finally:
        await engine.dispose()


# ----------------------------
# redis backend
# ----------------------------
@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


def redis_store(server):
    r = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    return _redis.CounterStore(r)


async def test_redis_read_last_seeds_a000(redis_server):
    store = redis_store(redis_server)
    assert await store.read_last() == "A000"
    assert await store.read_last() == "A000"
    assert await store.r.get("config:last_ticket_code") == "A000"


async def test_redis_advance_and_stale_snapshot(redis_server):
    store = redis_store(redis_server)
    snapshot = await store.read_last()
    assert await store.advance_to(snapshot, "A001") is True
    assert await store.advance_to(snapshot, "A001") is False
    assert await store.read_last() == "A001"


async def test_redis_racing_advances_from_same_snapshot(redis_server):
    s1, s2 = redis_store(redis_server), redis_store(redis_server)
    snap1, snap2 = await asyncio.gather(s1.read_last(), s2.read_last())
    assert snap1 == snap2 == "A000"

    results = await asyncio.gather(
        s1.advance_to(snap1, "A001"),
        s2.advance_to(snap2, "A001"),
    )
    assert sorted(results) == [False, True]
    assert await s2.read_last() == "A001"


async def test_redis_watch_error_is_a_conflict(redis_server, monkeypatch):
    store = redis_store(redis_server)
    await store.read_last()

    async def interrupted(self, *args, **kwargs):
        raise WatchError("key changed")

    monkeypatch.setattr(Pipeline, "execute", interrupted)
    assert await store.advance_to("A000", "A001") is False
    monkeypatch.undo()
    assert await store.read_last() == "A000"


async def test_redis_errors_are_wrapped():
    r = fakeredis.aioredis.FakeRedis(connected=False, decode_responses=True)
    store = _redis.CounterStore(r)
    with pytest.raises(CounterStoreError):
        await store.read_last()
    with pytest.raises(CounterStoreError):
        await store.advance_to("A000", "A001")


async def test_issuer_over_redis_backend(redis_server):
    issuer = TicketIssuer(redis_store(redis_server))
    assert await issuer.issue(3) == ["A001", "A002", "A003"]
