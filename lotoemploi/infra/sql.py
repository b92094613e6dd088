"""
Async SQLAlchemy wiring shared by every store.

`make_async_engine` returns `(engine, SessionAsync, gated)`. `gated()` is an
async context manager that bounds how many coroutines talk to the
datastore at once, so a burst of webhooks queues in the app instead of
timing out on the connection pool.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

# (sync prefix, async prefix)
_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),  # Heroku/Supabase style
)

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
    "foreign_keys=ON",
)

SQLITE_GATE_LIMIT = 10


def async_url(url: str) -> str:
    for sync_prefix, async_prefix in _DRIVERS:
        if url.startswith(sync_prefix):
            return async_prefix + url[len(sync_prefix):]
    return url


def _apply_sqlite_pragmas(dbapi_connection, _record):
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(f"PRAGMA {pragma};")
    cur.close()


class DbGate:
    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._sem = asyncio.Semaphore(self.limit)

    @asynccontextmanager
    async def __call__(self):
        async with self._sem:
            yield


class SqlHandles(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gated: DbGate


def make_async_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: float = 30.0,
    gate_limit: Optional[int] = None,
) -> SqlHandles:
    url = async_url(database_url)
    is_sqlite = url.startswith("sqlite+aiosqlite://")

    kw = dict(pool_pre_ping=True)
    if not is_sqlite:
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    engine = create_async_engine(url, **kw)

    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _apply_sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )

    if gate_limit is None:
        gate_limit = SQLITE_GATE_LIMIT if is_sqlite else pool_size
    return SqlHandles(engine, SessionAsync, DbGate(gate_limit))
