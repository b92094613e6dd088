import hashlib
import json

import httpx
import pytest

from lotoemploi.paygateway import (
    PAYDUNYA_LIVE_URL, PAYDUNYA_TEST_URL, GatewayError, MockGateway,
    PayDunyaGateway,
)

pytestmark = pytest.mark.anyio

MASTER = "master-key"


def make_gateway(handler, mode="test"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    gw = PayDunyaGateway(http, master_key=MASTER, private_key="priv",
                         token="tok", mode=mode, store_name="Loto")
    return gw, http


async def test_create_invoice_posts_checkout_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "response_code": "00",
            "response_text": "https://paydunya.com/checkout/invoice/test_abc",
            "token": "test_abc",
        })

    gw, http = make_gateway(handler)
    async with http:
        result = await gw.create_invoice(
            amount=3000, description="3 ticket(s)", payment_token="pt-1",
            num_tickets=3, provider="wave-senegal",
            return_url="https://api/r/pt-1", callback_url="https://api/c",
        )

    assert result == {
        "invoice_token": "test_abc",
        "checkout_url": "https://paydunya.com/checkout/invoice/test_abc",
    }
    assert seen["url"] == f"{PAYDUNYA_TEST_URL}/checkout-invoice/create"
    assert seen["headers"]["PAYDUNYA-MASTER-KEY"] == MASTER
    assert seen["headers"]["PAYDUNYA-TOKEN"] == "tok"
    body = seen["body"]
    assert body["invoice"] == {"total_amount": 3000,
                               "description": "3 ticket(s)",
                               "channels": ["wave-senegal"]}
    assert body["actions"]["callback_url"] == "https://api/c"
    assert body["custom_data"] == {"payment_token": "pt-1", "num_tickets": 3}


async def test_create_invoice_rejected():
    def handler(request):
        return httpx.Response(200, json={"response_code": "1001",
                                         "response_text": "Invalid keys"})

    gw, http = make_gateway(handler)
    async with http:
        with pytest.raises(GatewayError, match="1001"):
            await gw.create_invoice(
                amount=1000, description="d", payment_token="p",
                num_tickets=1, provider="", return_url="r", callback_url="c",
            )


async def test_http_failures_become_gateway_errors():
    def handler(request):
        return httpx.Response(503, text="down")

    gw, http = make_gateway(handler, mode="live")
    async with http:
        with pytest.raises(GatewayError, match="503"):
            await gw.confirm_invoice("inv")
    assert gw.base_url == PAYDUNYA_LIVE_URL


async def test_network_failures_become_gateway_errors():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    gw, http = make_gateway(handler)
    async with http:
        with pytest.raises(GatewayError):
            await gw.confirm_invoice("inv")


async def test_confirm_invoice_returns_status():
    def handler(request):
        assert request.url.path.endswith("/checkout-invoice/confirm/inv_9")
        return httpx.Response(200, json={"response_code": "00",
                                         "status": "Completed"})

    gw, http = make_gateway(handler)
    async with http:
        assert await gw.confirm_invoice("inv_9") == "completed"


def test_extract_invoice_token_from_ipn_form():
    gw = PayDunyaGateway(None, master_key=MASTER,
                         private_key="p", token="t")
    good_hash = hashlib.sha512(MASTER.encode()).hexdigest()
    form = {"data[invoice][token]": "inv_1", "data[hash]": good_hash,
            "data[status]": "completed"}
    assert gw.extract_invoice_token(form) == "inv_1"

    nested = {"data": {"hash": good_hash, "invoice": {"token": "inv_2"}}}
    assert gw.extract_invoice_token(nested) == "inv_2"

    forged = dict(form, **{"data[hash]": "0" * 128})
    assert gw.extract_invoice_token(forged) is None
    assert gw.extract_invoice_token({"data[invoice][token]": "x"}) is None


async def test_mock_gateway():
    gw = MockGateway()
    inv = await gw.create_invoice(
        amount=1, description="d", payment_token="p", num_tickets=1,
        provider="x", return_url="http://r", callback_url="http://c",
    )
    assert inv["checkout_url"] == "http://r"
    assert await gw.confirm_invoice(inv["invoice_token"]) == "completed"
    gw.set_status(inv["invoice_token"], "cancelled")
    assert await gw.confirm_invoice(inv["invoice_token"]) == "cancelled"
    with pytest.raises(GatewayError):
        await gw.confirm_invoice("unknown")
    assert gw.extract_invoice_token({"token": "t1"}) == "t1"
    assert gw.extract_invoice_token({}) is None
