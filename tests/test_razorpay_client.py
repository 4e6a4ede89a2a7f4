import json

import httpx
import pytest

from core.config import RazorpayConfig
from core.errors import GatewayError
from services.razorpay_client import (
    RazorpayClient,
    sign_payment,
    verify_payment_signature,
    verify_webhook_signature,
)

CONFIG = RazorpayConfig(key_id="rzp_test", key_secret="secret", base_url="https://api.test/v1")


def client_for(handler) -> RazorpayClient:
    return RazorpayClient(CONFIG, transport=httpx.MockTransport(handler))


def test_payment_signature_roundtrip():
    signature = sign_payment("secret", "order_1", "pay_1")
    assert verify_payment_signature("secret", "order_1", "pay_1", signature)
    assert not verify_payment_signature("secret", "order_1", "pay_2", signature)
    assert not verify_payment_signature("other", "order_1", "pay_1", signature)
    assert not verify_payment_signature("", "order_1", "pay_1", signature)


def test_webhook_signature_requires_header():
    assert not verify_webhook_signature("secret", b"{}", None)


async def test_create_order_posts_json_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "order_9", "amount": 49900, "currency": "INR",
            "receipt": "rcpt_x", "status": "created", "notes": {"userId": "u1"},
        })

    client = client_for(handler)
    order = await client.create_order(49900, "INR", "rcpt_x", {"userId": "u1"})
    await client.close()

    assert order.id == "order_9"
    assert seen["path"] == "/v1/orders"
    assert seen["auth"].startswith("Basic ")
    assert seen["body"] == {"amount": 49900, "currency": "INR", "receipt": "rcpt_x", "notes": {"userId": "u1"}}


async def test_empty_notes_list_is_normalised():
    def handler(request):
        return httpx.Response(200, json={"id": "order_1", "amount": 100, "currency": "INR", "notes": []})

    order = await client_for(handler).get_order("order_1")
    assert order.notes == {}


async def test_refund_posts_amount():
    def handler(request):
        assert request.url.path == "/v1/payments/pay_1/refund"
        assert json.loads(request.content) == {"amount": 49900, "speed": "normal"}
        return httpx.Response(200, json={"id": "rfnd_1", "payment_id": "pay_1", "amount": 49900, "status": "processed"})

    refund = await client_for(handler).refund("pay_1", 49900)
    assert refund.id == "rfnd_1"


async def test_error_response_carries_description():
    def handler(request):
        return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}})

    with pytest.raises(GatewayError) as exc:
        await client_for(handler).get_payment("pay_x")
    assert exc.value.status_code == 400
    assert exc.value.message == "The id provided does not exist"


async def test_timeout_is_gateway_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayError) as exc:
        await client_for(handler).get_order("order_1")
    assert "timed out" in exc.value.message


async def test_malformed_body_is_gateway_error():
    def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    with pytest.raises(GatewayError):
        await client_for(handler).get_order("order_1")


async def test_unexpected_shape_is_gateway_error():
    def handler(request):
        return httpx.Response(200, json={"id": "", "amount": 1, "currency": "INR"})

    with pytest.raises(GatewayError):
        await client_for(handler).get_order("order_1")


async def test_missing_credentials_never_calls_out():
    def handler(request):
        raise AssertionError("no request expected")

    client = RazorpayClient(RazorpayConfig(key_id="", key_secret=""), transport=httpx.MockTransport(handler))
    with pytest.raises(GatewayError):
        await client.get_order("order_1")
