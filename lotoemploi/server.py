from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import httpx
import redis.asyncio as redis
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import ConfigError, Settings
from .fulfillment import confirm_invoice
from .helpers import ct_equal, is_valid_email, positive_int, to_iso
from .infra.logging import setup_logging
from .infra.sql import make_async_engine
from .model import counter
from .model.db import Base, Payment
from .model.issuance import TicketIssuer
from .model.payments import PaymentStatus, PaymentStore
from .model.users import UserStore
from .notify import Notifier, NullNotifier, WhatsAppNotifier
from .paygateway import (
    GatewayError, MockGateway, PayDunyaGateway, PaymentGateway
)

logger = logging.getLogger(__name__)

REDIRECT_FOUND = 302

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


async def user_store(request: Request) -> UserStore:
    state = request.app.state
    async with state.SessionAsync() as session:
        yield UserStore(db=session, gated=state.gated)


async def payment_store(request: Request) -> PaymentStore:
    state = request.app.state
    async with state.SessionAsync() as session:
        yield PaymentStore(db=session, gated=state.gated)


async def ticket_issuer(request: Request) -> TicketIssuer:
    state = request.app.state
    if counter.BACKEND == "redis":
        yield TicketIssuer(counter.new_store(r=state.redis),
                           lock=state.issue_lock)
    else:
        async with state.SessionAsync() as session:
            store = counter.new_store(db=session, gated=state.gated)
            yield TicketIssuer(store, lock=state.issue_lock)


# ----------------------------
# Helpers
# ----------------------------
def require_admin(request: Request, settings: Settings) -> None:
    if not settings.admin_token:
        raise HTTPException(404, detail="not found")
    supplied = request.headers.get("x-admin-token", "")
    if not ct_equal(supplied, settings.admin_token):
        raise HTTPException(401, detail="invalid admin token")


def payment_json(p: Payment) -> Dict[str, Any]:
    return {
        "paymentToken": p.payment_token,
        "status": p.status,
        "tickets": list(p.tickets or []),
        "numTickets": p.numtickets,
        "amount": p.amount,
        "provider": p.provider,
        "paidAt": to_iso(p.paid_at),
    }


async def read_notification(request: Request) -> Mapping[str, Any]:
    ctype = request.headers.get("content-type", "")
    if "application/json" in ctype:
        body = await request.json()
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


# ----------------------------
# Landing
# ----------------------------
@router.get("/")
async def root():
    return {"service": "Lotoemploi backend", "status": "ok"}


# ----------------------------
# API: registration
# ----------------------------
@router.post("/api/register-user")
async def register_user(
    payload: dict,
    users: UserStore = Depends(user_store),
):
    fields = {
        k: str(payload.get(k) or "").strip()
        for k in ("name", "surname", "phone", "idNumber")
    }
    missing = [k for k, v in fields.items() if not v]
    if missing:
        raise HTTPException(
            400, detail=f"missing required fields: {', '.join(missing)}"
        )
    email = str(payload.get("email") or "").strip() or None
    if email is not None and not is_valid_email(email):
        raise HTTPException(400, detail="email must be a valid email address")

    try:
        user, created = await users.find_or_create(
            name=fields["name"],
            surname=fields["surname"],
            phone=fields["phone"],
            id_number=fields["idNumber"],
            email=email,
        )
    except SQLAlchemyError:
        logger.exception("registration failed")
        raise HTTPException(500, detail="registration failed, please retry")

    return {
        "userId": user.id,
        "name": user.name,
        "surname": user.surname,
        "phone": user.phone,
        "idNumber": user.id_number,
        "email": user.email,
        "created": created,
    }


# ----------------------------
# API: initiate payment
# ----------------------------
@router.post("/api/payments")
async def create_payment(
    payload: dict,
    settings: Settings = Depends(get_settings),
    users: UserStore = Depends(user_store),
    payments: PaymentStore = Depends(payment_store),
    gateway: PaymentGateway = Depends(get_gateway),
):
    user_id = str(payload.get("userId") or "").strip()
    provider = str(payload.get("provider") or "").strip()
    amount = positive_int(payload.get("amount"))
    num_tickets = positive_int(payload.get("numTickets"))

    errors = []
    if not user_id:
        errors.append("userId is required")
    if not provider:
        errors.append("provider is required")
    if amount is None:
        errors.append("amount must be a positive integer")
    if num_tickets is None:
        errors.append("numTickets must be a positive integer")
    elif num_tickets > settings.max_tickets_per_payment:
        errors.append(
            f"numTickets must be at most {settings.max_tickets_per_payment}"
        )
    if errors:
        raise HTTPException(400, detail="; ".join(errors))
    if settings.ticket_price and amount != num_tickets * settings.ticket_price:
        raise HTTPException(
            400,
            detail=f"amount must be numTickets x {settings.ticket_price}"
        )

    try:
        user = await users.get(user_id)
        if user is None:
            raise HTTPException(404, detail="user not found")
        payment = await payments.create(
            user_id=user.id, amount=amount, provider=provider,
            numtickets=num_tickets,
        )
        invoice = await gateway.create_invoice(
            amount=amount,
            description=f"{num_tickets} ticket(s) {settings.store_name}",
            payment_token=payment.payment_token,
            num_tickets=num_tickets,
            provider=provider,
            return_url=settings.return_url(payment.payment_token),
            callback_url=settings.callback_url,
        )
        await payments.set_invoice_token(payment.id, invoice["invoice_token"])
    except GatewayError as e:
        logger.error("invoice creation failed for user %s: %s", user_id, e)
        raise HTTPException(
            500, detail="payment provider unavailable, please retry"
        )
    except SQLAlchemyError:
        logger.exception("payment creation failed for user %s", user_id)
        raise HTTPException(500, detail="payment creation failed")

    logger.info("payment %s created: %d ticket(s), %d via %s",
                payment.payment_token, num_tickets, amount, provider)
    return {
        "checkoutUrl": invoice["checkout_url"],
        "paymentToken": payment.payment_token,
        "invoiceToken": invoice["invoice_token"],
    }


# ----------------------------
# API: payment status (polled by the status page)
# ----------------------------
@router.get("/api/payments/status/{token}")
async def payment_status(
    token: str,
    payments: PaymentStore = Depends(payment_store),
):
    try:
        payment = await payments.get_by_token(token)
    except SQLAlchemyError:
        logger.exception("status lookup failed for %s", token)
        raise HTTPException(500, detail="status lookup failed")
    if payment is None:
        raise HTTPException(404, detail="payment not found")
    return payment_json(payment)


# ----------------------------
# Webhook (IPN). Always 200: the gateway retries anything else.
# ----------------------------
@router.post("/api/confirm-payment")
async def confirm_payment(
    request: Request,
    background: BackgroundTasks,
    payments: PaymentStore = Depends(payment_store),
    issuer: TicketIssuer = Depends(ticket_issuer),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        payload = await read_notification(request)
        invoice_token = gateway.extract_invoice_token(payload)
        if not invoice_token:
            logger.warning("IPN without usable invoice token ignored")
            return {"ok": True, "result": "ignored"}

        outcome = await confirm_invoice(
            invoice_token, payments=payments, gateway=gateway, issuer=issuer,
        )
        if outcome.newly_paid:
            # after the paid write; its failures stay in the notifier
            background.add_task(
                notifier.notify,
                outcome.payment.user.phone,
                outcome.codes,
                outcome.payment.payment_token,
            )
        return {"ok": True, "result": outcome.result}
    except Exception:
        logger.exception("confirm-payment failed; acknowledging anyway")
        return {"ok": True, "result": "error"}


# ----------------------------
# Browser return from checkout
# ----------------------------
@router.get("/api/payment-return/{token}")
async def payment_return(
    token: str,
    settings: Settings = Depends(get_settings),
    payments: PaymentStore = Depends(payment_store),
):
    target = settings.status_page_url()
    try:
        payment = await payments.get_by_token(token)
    except SQLAlchemyError:
        logger.exception("return lookup failed for %s", token)
        return RedirectResponse(f"{target}?error=server_error",
                                status_code=REDIRECT_FOUND)
    if payment is None:
        return RedirectResponse(f"{target}?error=unknown_payment",
                                status_code=REDIRECT_FOUND)
    return RedirectResponse(f"{target}?token={quote(token)}",
                            status_code=REDIRECT_FOUND)


# ----------------------------
# Admin: reconciliation feed
# ----------------------------
@router.get("/api/admin/payments")
async def admin_payments(
    request: Request,
    status: str = PaymentStatus.INTEGRITY_FAILED.value,
    limit: int = 100,
    settings: Settings = Depends(get_settings),
    payments: PaymentStore = Depends(payment_store),
):
    require_admin(request, settings)
    try:
        wanted = PaymentStatus(status)
    except ValueError:
        raise HTTPException(400, detail=f"unknown status {status!r}")
    try:
        rows = await payments.list_by_status(wanted, limit=limit)
    except SQLAlchemyError:
        logger.exception("admin listing of %s payments failed", wanted.value)
        raise HTTPException(500, detail="payment listing failed")
    items = []
    for p in rows:
        item = payment_json(p)
        item.update({
            "userId": p.user_id,
            "phone": p.user.phone if p.user else None,
            "invoiceToken": p.invoice_token,
            "unreconciledTickets": list(p.unreconciled_tickets or []),
            "integrityError": p.integrity_error,
            "createdAt": to_iso(p.created_at),
        })
        items.append(item)
    return {"items": items, "status": wanted.value, "limit": limit}


# ----------------------------
# App factory
# ----------------------------
def _build_gateway(settings: Settings, http: httpx.AsyncClient):
    if settings.payment_gateway == "mock":
        logger.warning("using MockGateway: payments are NOT real")
        return MockGateway()
    return PayDunyaGateway(
        http,
        master_key=settings.paydunya_master_key,
        private_key=settings.paydunya_private_key,
        token=settings.paydunya_token,
        mode=settings.paydunya_mode,
        store_name=settings.store_name,
    )


def _build_notifier(settings: Settings, http: httpx.AsyncClient):
    if not settings.messaging_configured:
        logger.warning("WhatsApp credentials missing; notifications off")
        return NullNotifier()
    return WhatsAppNotifier(
        http,
        access_token=settings.whatsapp_token,
        phone_number_id=settings.whatsapp_phone_number_id,
        template=settings.whatsapp_template,
        lang=settings.whatsapp_lang,
        api_version=settings.whatsapp_api_version,
        country_code=settings.default_country_code,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    if settings is None:
        try:
            settings = Settings.from_env()
        except ConfigError as e:
            logging.basicConfig()
            logger.critical("cannot start: %s", e)
            raise SystemExit(1)
        setup_logging(settings.log_level, settings.log_file)

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Lotoemploi backend starting (gateway=%s, counter=%s)",
                    settings.payment_gateway, counter.BACKEND)

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await counter.create_schema(conn)

        app.state.http = httpx.AsyncClient(timeout=settings.http_timeout)
        if counter.BACKEND == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        if app.state.gateway is None:
            app.state.gateway = _build_gateway(settings, app.state.http)
        if app.state.notifier is None:
            app.state.notifier = _build_notifier(settings, app.state.http)

        yield

        await app.state.http.aclose()
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None
        await engine.dispose()
        logger.info("Lotoemploi backend stopped")

    app = FastAPI(
        title="Lotoemploi",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.gateway = gateway
    app.state.notifier = notifier
    app.state.redis = None
    # serializes issuers inside this process; the counter CAS covers
    # other processes
    app.state.issue_lock = asyncio.Lock()

    app.include_router(router)
    return app
