# model/counter/_redis.py
from __future__ import annotations
import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ..codes import DEFAULT_CODE
from ._errors import CounterStoreError, COUNTER_KEY


# ---- keys
def k_config(name: str) -> str: return f"config:{name}"


class CounterStore:
    def __init__(self, r: redis.Redis, key: str = COUNTER_KEY) -> None:
        self.r = r
        self.key = k_config(key)

    async def read_last(self) -> str:
        try:
            # NX seed; keeps whatever a concurrent writer put there
            await self.r.set(self.key, DEFAULT_CODE, nx=True)
            value = await self.r.get(self.key)
        except RedisError as e:
            raise CounterStoreError(f"reading {self.key} failed: {e}") from e
        return value or DEFAULT_CODE

    async def advance_to(self, old: str, new: str) -> bool:
        # optimistic CAS: WATCH, compare, MULTI/EXEC
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                await pipe.watch(self.key)
                current = await pipe.get(self.key)
                if (current or DEFAULT_CODE) != old:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(self.key, new)
                await pipe.execute()
                return True
        except WatchError:
            # someone advanced between our WATCH and EXEC
            return False
        except RedisError as e:
            raise CounterStoreError(
                f"advancing {self.key} {old} -> {new} failed: {e}"
            ) from e
