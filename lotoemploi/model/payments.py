from __future__ import annotations
import logging
import uuid
from enum import Enum
from typing import (
    Callable, AsyncContextManager, Dict, FrozenSet, List, Optional
)

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Payment
from ..helpers import now_ts, make_payment_token

logger = logging.getLogger(__name__)


# ----------------------------
# State machine
# ----------------------------
class PaymentStatus(str, Enum):
    PENDING = "pending"
    # claimed by exactly one webhook delivery; codes being minted
    ISSUING = "issuing"
    PAID = "paid"
    # issuance came up short; needs manual reconciliation
    INTEGRITY_FAILED = "integrity_failed"


_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.ISSUING}),
    PaymentStatus.ISSUING: frozenset({
        PaymentStatus.PAID, PaymentStatus.INTEGRITY_FAILED
    }),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.INTEGRITY_FAILED: frozenset(),
}


class IllegalTransition(ValueError):
    def __init__(self, current: PaymentStatus, target: PaymentStatus):
        self.current = current
        self.target = target
        super().__init__(
            f"illegal payment transition {current.value} -> {target.value}"
        )


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in _TRANSITIONS[PaymentStatus(current)]


def check_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(PaymentStatus(current), PaymentStatus(target))


# ----------------------------
# Payment records
# ----------------------------
class PaymentStore:
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
    ) -> None:
        self.db = db
        self.gated = gated

    async def create(
        self, *, user_id: str, amount: int, provider: str, numtickets: int,
    ) -> Payment:
        payment = Payment(
            id=uuid.uuid4().hex,
            user_id=user_id,
            status=PaymentStatus.PENDING.value,
            numtickets=numtickets,
            amount=amount,
            provider=provider,
            payment_token=make_payment_token(user_id),
            tickets=[],
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(payment)
        return payment

    async def set_invoice_token(self, payment_id: str,
                                invoice_token: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(Payment)
                    .where(Payment.id == payment_id)
                    .values(invoice_token=invoice_token)
                    .execution_options(synchronize_session=False)
                )

    async def _one(self, *criteria) -> Optional[Payment]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Payment)
                    .where(*criteria)
                    .execution_options(populate_existing=True)
                )).scalars().first()

    async def get_by_token(self, payment_token: str) -> Optional[Payment]:
        return await self._one(Payment.payment_token == payment_token)

    async def get_by_invoice(self, invoice_token: str) -> Optional[Payment]:
        return await self._one(Payment.invoice_token == invoice_token)

    async def transition(
        self, payment_id: str, current: PaymentStatus,
        target: PaymentStatus, **values,
    ) -> bool:
        """
        Move a payment from `current` to `target` only if it is still in
        `current`. Returns False when another caller got there first.
        Extra column values are written in the same UPDATE.
        """
        check_transition(current, target)
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(
                    update(Payment)
                    .where(Payment.id == payment_id,
                           Payment.status == PaymentStatus(current).value)
                    .values(status=PaymentStatus(target).value, **values)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def list_by_status(
        self, status: PaymentStatus, limit: int = 100
    ) -> List[Payment]:
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    select(Payment)
                    .where(Payment.status == PaymentStatus(status).value)
                    .order_by(Payment.created_at.desc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all())
