from __future__ import annotations
import asyncio
import logging
from contextlib import AsyncExitStack
from typing import List, Optional, Protocol

from .codes import next_code, InvalidCodeFormat
from .counter import CounterStoreError

logger = logging.getLogger(__name__)


class SupportsCounter(Protocol):
    async def read_last(self) -> str: ...
    async def advance_to(self, old: str, new: str) -> bool: ...


class IssuanceShortfall(Exception):
    """
    Fewer codes were minted than requested.

    `codes` holds the codes that were committed to the counter before the
    failure. They are spent: nobody else will receive them, and they belong
    to no paid payment until someone reconciles them.
    """

    def __init__(self, codes: List[str], requested: int, cause: str):
        self.codes = list(codes)
        self.requested = requested
        self.cause = cause
        super().__init__(
            f"issued {len(self.codes)} of {requested} ticket codes: {cause}"
        )


class TicketIssuer:
    def __init__(
        self,
        store: SupportsCounter,
        lock: Optional[asyncio.Lock] = None,
        max_conflicts: int = 25,
    ) -> None:
        self.store = store
        self.lock = lock
        self.max_conflicts = max_conflicts

    async def _mint_one(self) -> str:
        conflicts = 0
        while True:
            snapshot = await self.store.read_last()
            code = next_code(snapshot)
            if await self.store.advance_to(snapshot, code):
                return code
            # lost the CAS; another issuer advanced from the same snapshot
            conflicts += 1
            if conflicts > self.max_conflicts:
                raise CounterStoreError(
                    f"counter contention: gave up after {conflicts} "
                    f"conflicting advances"
                )
            logger.debug("counter conflict at %s, retrying", snapshot)

    async def issue(self, count: int) -> List[str]:
        if isinstance(count, bool) or not isinstance(count, int) \
                or count <= 0:
            raise ValueError(f"ticket count must be a positive int: {count!r}")

        codes: List[str] = []
        async with AsyncExitStack() as stack:
            if self.lock is not None:
                await stack.enter_async_context(self.lock)
            for _ in range(count):
                try:
                    codes.append(await self._mint_one())
                except (CounterStoreError, InvalidCodeFormat) as e:
                    logger.error(
                        "ticket issuance stopped at %d/%d: %s",
                        len(codes), count, e
                    )
                    raise IssuanceShortfall(codes, count, str(e)) from e
        return codes
