# model/counter/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._errors import CounterStoreError, COUNTER_KEY

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("COUNTER_BACKEND", "pg").lower()  # 'pg' | 'redis'

if BACKEND == "redis":
    from ._redis import CounterStore as _CounterStore
else:
    from ._postgres import CounterStore as _CounterStore

from ._postgres import create_schema  # noqa: E402


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "CounterStore(redis) requires r=redis.Redis"
            )
        return _CounterStore(r=r)
    else:
        if db is None:
            raise RuntimeError("CounterStore(pg) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("CounterStore(pg) requires gated=Gated")
        return _CounterStore(db=db, gated=gated)


CounterStore = _CounterStore
__all__ = [
    "CounterStore", "CounterStoreError", "COUNTER_KEY", "new_store",
    "create_schema", "BACKEND",
]
