from types import SimpleNamespace
from typing import List

import pytest

from lotoemploi.config import Settings
from lotoemploi.infra.sql import make_async_engine
from lotoemploi.model.counter import create_schema
from lotoemploi.model.db import Base
from lotoemploi.notify import Notifier


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'loto.db'}"


@pytest.fixture
async def sql(database_url):
    engine, SessionAsync, gated = make_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    yield SimpleNamespace(engine=engine, SessionAsync=SessionAsync,
                          gated=gated)
    await engine.dispose()


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        base_url="http://testserver",
        allowed_origins=["http://localhost:3000"],
        payment_gateway="mock",
        frontend_url="http://front.example",
        admin_token="s3cret",
    )


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: List[tuple] = []
        self.fail = fail

    async def send(self, destination, codes, token):
        if self.fail:
            raise RuntimeError("messaging outage")
        self.sent.append((destination, codes, token))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
