"""Tests for the provider adapters and webhook signature schemes.

YooKassa runs against an ``httpx.MockTransport``; Stripe SDK calls are
patched. No network access is needed.
"""

from __future__ import annotations

import json
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe

from memecraft.errors import InvalidSignature, ProviderError
from memecraft.payments.base import (
    CreatePaymentRequest,
    PaymentProvider,
    RefundRequest,
    to_major_units,
    to_minor_units,
)
from memecraft.payments.mock_gateway import MockGateway
from memecraft.payments.signatures import (
    sign_hmac_sha256,
    verify_hmac_sha256,
    verify_stripe_v1,
    verify_webhook_signature,
)
from memecraft.payments.stripe_gateway import StripeGateway
from memecraft.payments.yookassa_gateway import YooKassaGateway

SECRET = "whsec_test"


def _request(amount: int = 39900) -> CreatePaymentRequest:
    return CreatePaymentRequest(
        amount=amount,
        currency="RUB",
        description="Purchase of 50 credits",
        user_id="user-1",
        metadata={"type": "credits", "credits": "50"},
    )


def _stripe_header(body: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    return f"t={timestamp},v1={sign_hmac_sha256(signed, secret)}"


# ---------------------------------------------------------------------------
# Amount helpers
# ---------------------------------------------------------------------------

def test_minor_major_conversion():
    assert to_major_units(39900) == "399.00"
    assert to_major_units(1999) == "19.99"
    assert to_minor_units("19.99") == 1999
    assert to_minor_units("399.00") == 39900


def test_adapters_satisfy_provider_contract():
    assert isinstance(MockGateway(), PaymentProvider)
    assert isinstance(StripeGateway("sk_test"), PaymentProvider)
    assert isinstance(YooKassaGateway("shop", "key"), PaymentProvider)


# ---------------------------------------------------------------------------
# Signature schemes
# ---------------------------------------------------------------------------

def test_hmac_sha256_roundtrip_and_tamper():
    body = b'{"object": {"id": "p1"}}'
    signature = sign_hmac_sha256(body, SECRET)

    assert verify_hmac_sha256(body, signature, SECRET) is True
    assert verify_hmac_sha256(body + b" ", signature, SECRET) is False
    assert verify_hmac_sha256(body, signature, "other-secret") is False
    assert verify_hmac_sha256(body, "", SECRET) is False


def test_stripe_v1_accepts_fresh_signature():
    body = b'{"id": "evt_1"}'

    assert verify_stripe_v1(body, _stripe_header(body, SECRET), SECRET) is True


def test_stripe_v1_rejects_stale_signature():
    body = b'{"id": "evt_1"}'
    header = _stripe_header(body, SECRET, timestamp=int(time.time()) - 3600)

    assert verify_stripe_v1(body, header, SECRET) is False


def test_missing_secret_rejected_unless_allowed():
    with pytest.raises(InvalidSignature):
        verify_webhook_signature("yookassa", "hmac-sha256", b"{}", "", "")

    # Development escape hatch
    verify_webhook_signature("yookassa", "hmac-sha256", b"{}", "", "", allow_unsigned=True)


def test_invalid_signature_error_shape():
    with pytest.raises(InvalidSignature) as exc_info:
        verify_webhook_signature("mock", "hmac-sha256", b"{}", "bad", SECRET)

    assert exc_info.value.status_code == 400
    assert exc_info.value.provider == "mock"


# ---------------------------------------------------------------------------
# YooKassa
# ---------------------------------------------------------------------------

def _yookassa(handler, webhook_secret: str = SECRET) -> YooKassaGateway:
    return YooKassaGateway(
        shop_id="shop-1",
        api_key="key-1",
        webhook_secret=webhook_secret,
        return_url="https://example.test/return",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_yookassa_create_payment_sends_redirect_request():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["idempotence"] = request.headers.get("idempotence-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "2d1f-yk",
            "status": "pending",
            "confirmation": {"type": "redirect", "confirmation_url": "https://yoomoney.test/pay"},
        })

    result = await _yookassa(handler).create_payment(_request())

    assert result.payment_id == "2d1f-yk"
    assert result.confirmation_url == "https://yoomoney.test/pay"
    assert seen["path"] == "/v3/payments"
    assert seen["auth"].startswith("Basic ")
    assert seen["idempotence"]
    assert seen["body"]["amount"] == {"value": "399.00", "currency": "RUB"}
    assert seen["body"]["confirmation"]["return_url"] == "https://example.test/return"
    assert seen["body"]["metadata"]["credits"] == "50"


@pytest.mark.asyncio
async def test_yookassa_error_response_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"description": "Invalid credentials"})

    with pytest.raises(ProviderError) as exc_info:
        await _yookassa(handler).create_payment(_request())

    assert exc_info.value.detail == "Invalid credentials"
    assert exc_info.value.message == "Payment processing failed"


@pytest.mark.asyncio
async def test_yookassa_timeout_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError):
        await _yookassa(handler).get_payment_status("2d1f-yk")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("native", "canonical"),
    [
        ("pending", "pending"),
        ("waiting_for_capture", "pending"),
        ("succeeded", "succeeded"),
        ("canceled", "cancelled"),
    ],
)
async def test_yookassa_status_mapping(native, canonical):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "id": "2d1f-yk",
            "status": native,
            "amount": {"value": "399.00", "currency": "RUB"},
            "metadata": {"type": "credits"},
        })

    intent = await _yookassa(handler).get_payment_status("2d1f-yk")

    assert intent.status == canonical
    assert intent.amount == 39900


@pytest.mark.asyncio
async def test_yookassa_refund_defaults_to_full_amount():
    refunds: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={
                "id": "2d1f-yk",
                "status": "succeeded",
                "amount": {"value": "399.00", "currency": "RUB"},
            })
        refunds.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "rf-1", "status": "succeeded"})

    await _yookassa(handler).refund(RefundRequest(payment_id="2d1f-yk"))

    assert refunds[0]["payment_id"] == "2d1f-yk"
    assert refunds[0]["amount"] == {"value": "399.00", "currency": "RUB"}


@pytest.mark.asyncio
async def test_yookassa_health_check():
    def ok(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3/me"
        return httpx.Response(200, json={"account_id": "shop-1"})

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert await _yookassa(ok).health_check() is True
    assert await _yookassa(down).health_check() is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("event", "status"),
    [
        ("payment.succeeded", "succeeded"),
        ("payment.canceled", "failed"),
        ("payment.waiting_for_capture", "pending"),
    ],
)
async def test_yookassa_webhook_events(event, status):
    body = json.dumps({
        "type": "notification",
        "event": event,
        "object": {
            "id": "2d1f-yk",
            "status": "whatever",
            "amount": {"value": "399.00", "currency": "RUB"},
            "metadata": {"type": "credits", "credits": "50"},
        },
    }).encode()
    gateway = _yookassa(lambda r: httpx.Response(500))

    webhook = await gateway.handle_webhook(body, sign_hmac_sha256(body, SECRET))

    assert webhook.payment_id == "2d1f-yk"
    assert webhook.status == status
    assert webhook.amount == 39900
    assert webhook.metadata["credits"] == "50"


@pytest.mark.asyncio
async def test_yookassa_refund_webhook_keyed_by_payment():
    body = json.dumps({
        "event": "refund.succeeded",
        "object": {
            "id": "rf-1",
            "payment_id": "2d1f-yk",
            "status": "succeeded",
            "amount": {"value": "399.00", "currency": "RUB"},
        },
    }).encode()
    gateway = _yookassa(lambda r: httpx.Response(500))

    webhook = await gateway.handle_webhook(body, sign_hmac_sha256(body, SECRET))

    assert webhook.payment_id == "2d1f-yk"
    assert webhook.status == "refunded"


_AMOUNT = {"value": "399.00", "currency": "RUB"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"event": "payment.succeeded", "object": "2d1f-yk"},
        {"event": 5, "object": {"id": "2d1f-yk", "amount": _AMOUNT}},
        {"event": "payment.succeeded", "object": {"id": "2d1f-yk", "amount": "399.00"}},
        {"event": "payment.succeeded", "object": {"id": "2d1f-yk", "amount": {"value": "399.00"}}},
        {"event": "payment.succeeded", "object": {"id": "2d1f-yk", "amount": {"value": "lots", "currency": "RUB"}}},
        {"event": "payment.succeeded", "object": {"id": ["2d1f-yk"], "amount": _AMOUNT}},
        {"event": "payment.succeeded", "object": {"id": "2d1f-yk", "amount": _AMOUNT, "metadata": ["x"]}},
    ],
)
async def test_yookassa_webhook_malformed_shape(payload):
    body = json.dumps(payload).encode()
    gateway = _yookassa(lambda r: httpx.Response(500))

    with pytest.raises(ProviderError) as exc_info:
        await gateway.handle_webhook(body, sign_hmac_sha256(body, SECRET))

    assert exc_info.value.detail == "Malformed webhook payload"


@pytest.mark.asyncio
async def test_yookassa_webhook_odd_object_status_stays_pending():
    body = json.dumps({
        "event": "payment.pending",
        "object": {"id": "2d1f-yk", "amount": _AMOUNT, "status": ["x"]},
    }).encode()
    gateway = _yookassa(lambda r: httpx.Response(500))

    webhook = await gateway.handle_webhook(body, sign_hmac_sha256(body, SECRET))

    assert webhook.status == "pending"


@pytest.mark.asyncio
async def test_yookassa_webhook_bad_signature():
    body = b'{"event": "payment.succeeded", "object": {"id": "x"}}'
    gateway = _yookassa(lambda r: httpx.Response(500))

    with pytest.raises(InvalidSignature):
        await gateway.handle_webhook(body, "deadbeef")


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stripe_create_payment_returns_client_secret():
    intent = {"id": "pi_123", "client_secret": "pi_123_secret_abc"}

    with patch("stripe.PaymentIntent.create", return_value=intent) as mock_create:
        result = await StripeGateway("sk_test_1").create_payment(_request())

    assert result.payment_id == "pi_123"
    assert result.confirmation_data == {"clientSecret": "pi_123_secret_abc"}
    assert result.confirmation_url is None
    kwargs = mock_create.call_args.kwargs
    assert kwargs["amount"] == 39900
    assert kwargs["currency"] == "rub"
    assert kwargs["api_key"] == "sk_test_1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("native", "canonical"),
    [
        ("succeeded", "succeeded"),
        ("processing", "pending"),
        ("requires_action", "pending"),
        ("requires_payment_method", "failed"),
        ("canceled", "failed"),
    ],
)
async def test_stripe_status_mapping(native, canonical):
    intent = {"id": "pi_123", "amount": 39900, "currency": "rub", "status": native, "metadata": {}}

    with patch("stripe.PaymentIntent.retrieve", return_value=intent):
        result = await StripeGateway("sk_test_1").get_payment_status("pi_123")

    assert result.status == canonical
    assert result.currency == "RUB"


@pytest.mark.asyncio
async def test_stripe_sdk_error_wrapped():
    with patch("stripe.PaymentIntent.create", side_effect=stripe.StripeError("card declined")):
        with pytest.raises(ProviderError) as exc_info:
            await StripeGateway("sk_test_1").create_payment(_request())

    assert exc_info.value.provider == "stripe"
    assert "card declined" in exc_info.value.detail


@pytest.mark.asyncio
async def test_stripe_call_bounded_by_timeout():
    def slow(*args, **kwargs):
        time.sleep(0.3)

    with patch("stripe.PaymentIntent.retrieve", side_effect=slow):
        with pytest.raises(ProviderError) as exc_info:
            await StripeGateway("sk_test_1", timeout=0.05).get_payment_status("pi_123")

    assert "Timed out" in exc_info.value.detail


@pytest.mark.asyncio
async def test_stripe_refund_partial():
    with patch("stripe.Refund.create", return_value=MagicMock()) as mock_refund:
        await StripeGateway("sk_test_1").refund(RefundRequest(payment_id="pi_123", amount=1000))

    kwargs = mock_refund.call_args.kwargs
    assert kwargs["payment_intent"] == "pi_123"
    assert kwargs["amount"] == 1000


@pytest.mark.asyncio
async def test_stripe_webhook_payment_intent_succeeded():
    body = json.dumps({
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_123",
            "amount": 39900,
            "currency": "rub",
            "metadata": {"type": "credits", "credits": "50"},
        }},
    }).encode()
    gateway = StripeGateway("sk_test_1", webhook_secret=SECRET)

    webhook = await gateway.handle_webhook(body, _stripe_header(body, SECRET))

    assert webhook.payment_id == "pi_123"
    assert webhook.status == "succeeded"
    assert webhook.amount == 39900
    assert webhook.currency == "RUB"


@pytest.mark.asyncio
async def test_stripe_webhook_charge_refunded():
    body = json.dumps({
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {"object": {
            "id": "ch_1",
            "payment_intent": "pi_123",
            "amount": 39900,
            "amount_refunded": 39900,
            "currency": "rub",
        }},
    }).encode()
    gateway = StripeGateway("sk_test_1", webhook_secret=SECRET)

    webhook = await gateway.handle_webhook(body, _stripe_header(body, SECRET))

    assert webhook.payment_id == "pi_123"
    assert webhook.status == "refunded"


@pytest.mark.asyncio
async def test_stripe_webhook_bad_signature():
    body = b'{"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}'
    gateway = StripeGateway("sk_test_1", webhook_secret=SECRET)

    with pytest.raises(InvalidSignature):
        await gateway.handle_webhook(body, _stripe_header(body, "wrong-secret"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"type": "payment_intent.succeeded", "data": {"object": "pi_123"}},
        {"type": ["payment_intent.succeeded"], "data": {"object": {"id": "pi_123"}}},
        {"type": "payment_intent.succeeded", "data": []},
    ],
)
async def test_stripe_webhook_malformed_shape(payload):
    body = json.dumps(payload).encode()
    gateway = StripeGateway("sk_test_1", webhook_secret=SECRET)

    with pytest.raises(ProviderError) as exc_info:
        await gateway.handle_webhook(body, _stripe_header(body, SECRET))

    assert exc_info.value.detail == "Malformed webhook payload"


@pytest.mark.asyncio
async def test_stripe_health_check():
    with patch("stripe.Balance.retrieve", return_value={"available": []}):
        assert await StripeGateway("sk_test_1").health_check() is True
    with patch("stripe.Balance.retrieve", side_effect=stripe.StripeError("bad key")):
        assert await StripeGateway("sk_test_1").health_check() is False


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mock_gateway_flow():
    gateway = MockGateway(webhook_secret=SECRET)

    result = await gateway.create_payment(_request())
    assert result.payment_id.startswith("mock_payment_")
    assert result.confirmation_url.endswith(result.payment_id)
    assert (await gateway.get_payment_status(result.payment_id)).status == "pending"

    gateway.confirm_payment(result.payment_id)
    body, signature = gateway.build_webhook(result.payment_id)
    webhook = await gateway.handle_webhook(body, signature)

    assert webhook.status == "succeeded"
    assert webhook.amount == 39900
    assert webhook.metadata["credits"] == "50"


@pytest.mark.asyncio
async def test_mock_gateway_simulated_error():
    gateway = MockGateway(simulate_error=True)

    with pytest.raises(ProviderError) as exc_info:
        await gateway.create_payment(_request())

    assert "insufficient funds" in exc_info.value.detail
    assert gateway.payments == {}


@pytest.mark.asyncio
async def test_mock_gateway_refund_requires_success():
    gateway = MockGateway()
    result = await gateway.create_payment(_request())

    with pytest.raises(ProviderError):
        await gateway.refund(RefundRequest(payment_id=result.payment_id))

    gateway.confirm_payment(result.payment_id)
    await gateway.refund(RefundRequest(payment_id=result.payment_id))
    assert gateway.payments[result.payment_id].status == "refunded"
