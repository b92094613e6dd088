"""
Payment confirmation: gateway notification -> verified -> tickets minted.

Flow for one delivery of the gateway webhook:

  1. look the payment up by invoice token
  2. anything but `pending` is a replay: nothing to do
  3. ask the gateway whether the invoice is really completed
  4. claim the payment (`pending -> issuing`, conditional update), so that
     only one of several concurrent deliveries mints codes
  5. mint `numtickets` codes
  6. `issuing -> paid` with the codes, in one update

A short issuance, or a paid write that fails after minting, parks the
payment in `integrity_failed` together with the codes that were minted; it
is never marked paid with fewer codes than ordered.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .helpers import now_ts
from .model.db import Payment
from .model.issuance import TicketIssuer, IssuanceShortfall
from .model.payments import PaymentStore, PaymentStatus
from .paygateway import PaymentGateway, GatewayError, STATUS_COMPLETED

logger = logging.getLogger(__name__)

UNKNOWN_INVOICE = "unknown_invoice"
ALREADY_PROCESSED = "already_processed"
VERIFICATION_FAILED = "verification_failed"
NOT_COMPLETED = "not_completed"
PAID = "paid"
INTEGRITY_FAILED = "integrity_failed"
STORE_ERROR = "store_error"


@dataclass
class Confirmation:
    result: str
    payment: Optional[Payment] = None
    codes: List[str] = field(default_factory=list)

    @property
    def newly_paid(self) -> bool:
        return self.result == PAID


async def _park_unreconciled(
    payments: PaymentStore, payment: Payment, codes: List[str], error: str,
) -> None:
    # best effort; callers log the codes at critical level first
    try:
        await payments.transition(
            payment.id, PaymentStatus.ISSUING, PaymentStatus.INTEGRITY_FAILED,
            unreconciled_tickets=codes,
            integrity_error=error,
        )
    except SQLAlchemyError:
        logger.exception("could not park payment %s for reconciliation",
                         payment.payment_token)


async def confirm_invoice(
    invoice_token: str,
    *,
    payments: PaymentStore,
    gateway: PaymentGateway,
    issuer: TicketIssuer,
) -> Confirmation:
    payment = await payments.get_by_invoice(invoice_token)
    if payment is None:
        logger.warning("confirmation for unknown invoice %s", invoice_token)
        return Confirmation(UNKNOWN_INVOICE)

    if payment.status != PaymentStatus.PENDING.value:
        logger.info("payment %s already %s, ignoring replay",
                    payment.payment_token, payment.status)
        return Confirmation(ALREADY_PROCESSED, payment)

    try:
        gateway_status = await gateway.confirm_invoice(invoice_token)
    except GatewayError as e:
        logger.error("could not verify invoice %s: %s", invoice_token, e)
        return Confirmation(VERIFICATION_FAILED, payment)

    if gateway_status != STATUS_COMPLETED:
        logger.info("invoice %s is %r, payment %s stays pending",
                    invoice_token, gateway_status, payment.payment_token)
        return Confirmation(NOT_COMPLETED, payment)

    claimed = await payments.transition(
        payment.id, PaymentStatus.PENDING, PaymentStatus.ISSUING
    )
    if not claimed:
        logger.info("payment %s claimed by a concurrent delivery",
                    payment.payment_token)
        return Confirmation(ALREADY_PROCESSED, payment)

    try:
        codes = await issuer.issue(payment.numtickets)
    except IssuanceShortfall as e:
        logger.critical(
            "INTEGRITY: payment %s needs %d tickets, only %s minted (%s); "
            "manual reconciliation required",
            payment.payment_token, e.requested, e.codes, e.cause
        )
        await _park_unreconciled(payments, payment, e.codes, str(e))
        return Confirmation(INTEGRITY_FAILED, payment, e.codes)

    try:
        await payments.transition(
            payment.id, PaymentStatus.ISSUING, PaymentStatus.PAID,
            tickets=codes, paid_at=now_ts(),
        )
    except SQLAlchemyError as e:
        logger.critical(
            "INTEGRITY: payment %s minted %s but the paid write failed: %s",
            payment.payment_token, codes, e
        )
        await _park_unreconciled(payments, payment, codes,
                                 f"paid write failed: {e}")
        return Confirmation(STORE_ERROR, payment, codes)

    logger.info("payment %s paid, tickets %s", payment.payment_token, codes)
    return Confirmation(PAID, payment, codes)
