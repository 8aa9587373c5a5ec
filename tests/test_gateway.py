import hashlib
import hmac
import json

import httpx
import pytest

from marketplace_orders.errors import GatewayError
from marketplace_orders.gateway import PaymentStatus, PaystackGateway


def _gateway(handler) -> PaystackGateway:
    return PaystackGateway(
        "https://api.paystack.test", "sk_test_123", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio()
async def test_initialize_session_returns_authorization_url():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"status": True, "data": {"authorization_url": "https://checkout.paystack.test/abc"}},
        )

    url = await _gateway(handler).initialize_session(
        "b@example.com", 15000, "ORD-1", {"order_id": "o1"}
    )

    assert url == "https://checkout.paystack.test/abc"
    assert captured["path"] == "/transaction/initialize"
    assert captured["auth"] == "Bearer sk_test_123"
    assert captured["body"] == {
        "email": "b@example.com",
        "amount": 15000,
        "reference": "ORD-1",
        "metadata": {"order_id": "o1"},
    }


@pytest.mark.parametrize(
    ("gateway_status", "expected"),
    [
        ("success", PaymentStatus.PAID),
        ("failed", PaymentStatus.FAILED),
        ("abandoned", PaymentStatus.FAILED),
        ("ongoing", PaymentStatus.PENDING),
    ],
)
@pytest.mark.asyncio()
async def test_confirm_maps_gateway_status(gateway_status, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/transaction/verify/ORD-1"
        return httpx.Response(
            200,
            json={"status": True, "data": {"reference": "ORD-1", "status": gateway_status, "amount": 15000}},
        )

    confirmation = await _gateway(handler).confirm("ORD-1")

    assert confirmation.status == expected
    assert confirmation.amount == 15000
    assert confirmation.reference == "ORD-1"


@pytest.mark.asyncio()
async def test_http_error_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    with pytest.raises(GatewayError, match="503"):
        await _gateway(handler).refund("ORD-1", 15000)


@pytest.mark.asyncio()
async def test_transport_error_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        await _gateway(handler).confirm("ORD-1")


@pytest.mark.asyncio()
async def test_rejected_body_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": False, "message": "Transaction already refunded"})

    with pytest.raises(GatewayError, match="already refunded"):
        await _gateway(handler).refund("ORD-1", 15000)


@pytest.mark.asyncio()
async def test_release_transfers_full_amount_to_recipient():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": True, "data": {"transfer_code": "TRF_1"}})

    await _gateway(handler).release("RCP_seller", 15000, "ORD-1")

    assert captured["path"] == "/transfer"
    assert captured["body"]["amount"] == 15000
    assert captured["body"]["recipient"] == "RCP_seller"


def test_verify_signature():
    gateway = PaystackGateway("https://api.paystack.test", "sk_test_123")
    body = b'{"event":"charge.success","data":{"reference":"ORD-1"}}'
    signature = hmac.new(b"sk_test_123", body, hashlib.sha512).hexdigest()

    assert gateway.verify_signature(body, signature)
    assert not gateway.verify_signature(body + b" ", signature)
    assert not gateway.verify_signature(body, None)


@pytest.mark.asyncio()
async def test_non_json_body_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>upstream proxy error</html>")

    with pytest.raises(GatewayError, match="non-JSON"):
        await _gateway(handler).refund("ORD-1", 15000)
