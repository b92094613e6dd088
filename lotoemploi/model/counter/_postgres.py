# model/counter/_postgres.py
"""
SQL backend for the ticket counter.

The counter is a single row in `app_config`. Advancing it is a
compare-and-swap expressed as a conditional UPDATE: the row only changes if
it still holds the value the caller read, so two callers that read the same
snapshot can never both advance from it.
"""
from __future__ import annotations
from typing import Callable, AsyncContextManager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from ..codes import DEFAULT_CODE
from ...helpers import now_ts
from ._errors import CounterStoreError, COUNTER_KEY


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_APP_CONFIG = r"""
-- key/value configuration rows; holds the last issued ticket code
CREATE TABLE IF NOT EXISTS app_config (
  key         TEXT PRIMARY KEY,
  value       TEXT NOT NULL,
  updated_at  DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    await db_or_conn.execute(text(SQL_CREATE_APP_CONFIG))


class CounterStore:
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
        key: str = COUNTER_KEY,
    ) -> None:
        self.db = db
        self.gated = gated
        self.key = key

    async def read_last(self) -> str:
        try:
            async with self.gated():
                async with self.db.begin():
                    # seed the default on first use; no-op afterwards
                    await self.db.execute(text("""
                      INSERT INTO app_config(key, value, updated_at)
                      VALUES(:k, :v, :ts)
                      ON CONFLICT (key) DO NOTHING
                    """), {"k": self.key, "v": DEFAULT_CODE, "ts": now_ts()})
                    value = (await self.db.execute(
                        text("SELECT value FROM app_config WHERE key=:k"),
                        {"k": self.key},
                    )).scalar_one()
        except SQLAlchemyError as e:
            raise CounterStoreError(f"reading {self.key} failed: {e}") from e
        return value

    async def advance_to(self, old: str, new: str) -> bool:
        try:
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(text("""
                      UPDATE app_config SET value=:new, updated_at=:ts
                      WHERE key=:k AND value=:old
                    """), {"k": self.key, "old": old, "new": new,
                           "ts": now_ts()})
        except SQLAlchemyError as e:
            raise CounterStoreError(
                f"advancing {self.key} {old} -> {new} failed: {e}"
            ) from e
        return result.rowcount == 1
