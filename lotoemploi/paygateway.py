from __future__ import annotations
import hashlib
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, TypedDict

import httpx

from .helpers import ct_equal

logger = logging.getLogger(__name__)

PAYDUNYA_LIVE_URL = "https://app.paydunya.com/api/v1"
PAYDUNYA_TEST_URL = "https://app.paydunya.com/sandbox-api/v1"

STATUS_COMPLETED = "completed"


class GatewayError(RuntimeError):
    pass


class InvoiceResult(TypedDict):
    invoice_token: str
    checkout_url: str


def _dig(payload: Mapping[str, Any], *path: str) -> Any:
    """
    Look up data[invoice][token] in either a nested JSON body or a flat
    form body whose keys are literally "data[invoice][token]".
    """
    flat = path[0] + "".join(f"[{p}]" for p in path[1:])
    if flat in payload:
        return payload[flat]
    node: Any = payload
    for p in path:
        if not isinstance(node, Mapping) or p not in node:
            return None
        node = node[p]
    return node


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    async def create_invoice(
        self, *, amount: int, description: str, payment_token: str,
        num_tickets: int, provider: str, return_url: str,
        callback_url: str,
    ) -> InvoiceResult: ...

    # gateway status string, e.g. "pending" | "cancelled" | "completed"
    @abstractmethod
    async def confirm_invoice(self, invoice_token: str) -> str: ...

    # None when the notification is not ours or carries no token
    @abstractmethod
    def extract_invoice_token(
        self, payload: Mapping[str, Any]
    ) -> Optional[str]: ...


# ----------------------------
# PayDunya implementation
# ----------------------------
class PayDunyaGateway(PaymentGateway):
    def __init__(
        self, http: httpx.AsyncClient, *, master_key: str, private_key: str,
        token: str, mode: str = "test", store_name: str = "Lotoemploi",
    ) -> None:
        self.http = http
        self.master_key = master_key
        self.store_name = store_name
        self.base_url = PAYDUNYA_LIVE_URL if mode == "live" \
            else PAYDUNYA_TEST_URL
        self.headers = {
            "PAYDUNYA-MASTER-KEY": master_key,
            "PAYDUNYA-PRIVATE-KEY": private_key,
            "PAYDUNYA-TOKEN": token,
            "Content-Type": "application/json",
        }
        # IPN bodies carry sha512(master key) as proof of origin
        self.ipn_hash = hashlib.sha512(master_key.encode()).hexdigest()

    async def _call(self, method: str, path: str, **kw) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = await self.http.request(method, url, headers=self.headers,
                                        **kw)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"{method} {path} -> HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {path} failed: {e!r}") from e
        except ValueError as e:
            raise GatewayError(f"{method} {path}: invalid JSON") from e

    async def create_invoice(
        self, *, amount: int, description: str, payment_token: str,
        num_tickets: int, provider: str, return_url: str,
        callback_url: str,
    ) -> InvoiceResult:
        invoice: Dict[str, Any] = {
            "total_amount": amount,
            "description": description,
        }
        if provider:
            # restrict the checkout page to the channel the buyer picked
            invoice["channels"] = [provider]
        body = {
            "invoice": invoice,
            "store": {"name": self.store_name},
            "actions": {
                "cancel_url": return_url,
                "return_url": return_url,
                "callback_url": callback_url,
            },
            "custom_data": {
                "payment_token": payment_token,
                "num_tickets": num_tickets,
            },
        }
        data = await self._call("POST", "/checkout-invoice/create", json=body)
        if data.get("response_code") != "00" or not data.get("token"):
            raise GatewayError(
                "invoice creation rejected: "
                f"{data.get('response_code')} {data.get('response_text')}"
            )
        return {
            "invoice_token": data["token"],
            "checkout_url": data["response_text"],
        }

    async def confirm_invoice(self, invoice_token: str) -> str:
        data = await self._call(
            "GET", f"/checkout-invoice/confirm/{invoice_token}"
        )
        if data.get("response_code") != "00":
            raise GatewayError(
                "invoice confirmation rejected: "
                f"{data.get('response_code')} {data.get('response_text')}"
            )
        return str(data.get("status", "")).lower()

    def extract_invoice_token(
        self, payload: Mapping[str, Any]
    ) -> Optional[str]:
        received = _dig(payload, "data", "hash")
        if not received or not ct_equal(str(received), self.ipn_hash):
            logger.warning("IPN rejected: missing or bad hash")
            return None
        token = _dig(payload, "data", "invoice", "token")
        return str(token) if token else None


# ----------------------------
# MockGateway (development)
# ----------------------------
class MockGateway(PaymentGateway):
    """
    Completes every invoice unless `set_status` says otherwise. The
    checkout URL points straight back at the return endpoint, so a browser
    flow runs end to end without a real gateway.
    """

    def __init__(self) -> None:
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.statuses: Dict[str, str] = {}

    async def create_invoice(
        self, *, amount: int, description: str, payment_token: str,
        num_tickets: int, provider: str, return_url: str,
        callback_url: str,
    ) -> InvoiceResult:
        invoice_token = f"mock_{uuid.uuid4().hex}"
        self.invoices[invoice_token] = {
            "amount": amount,
            "payment_token": payment_token,
            "num_tickets": num_tickets,
            "provider": provider,
            "callback_url": callback_url,
        }
        return {"invoice_token": invoice_token, "checkout_url": return_url}

    def set_status(self, invoice_token: str, status: str) -> None:
        self.statuses[invoice_token] = status

    async def confirm_invoice(self, invoice_token: str) -> str:
        if invoice_token not in self.invoices:
            raise GatewayError(f"unknown invoice {invoice_token}")
        return self.statuses.get(invoice_token, STATUS_COMPLETED)

    def extract_invoice_token(
        self, payload: Mapping[str, Any]
    ) -> Optional[str]:
        token = _dig(payload, "data", "invoice", "token") \
            or payload.get("token")
        return str(token) if token else None
