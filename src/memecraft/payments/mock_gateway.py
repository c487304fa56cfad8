"""In-memory payment provider for development and tests.

Payments live in a dict on the instance. ``confirm_payment`` plays the part of
the customer completing checkout, and ``build_webhook`` produces the signed
callback a real provider would send.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from memecraft.errors import ProviderError
from memecraft.models.base import utcnow
from memecraft.payments.base import (
    CreatePaymentRequest,
    CreatePaymentResult,
    PaymentIntent,
    PaymentWebhook,
    RefundRequest,
)
from memecraft.payments.signatures import sign_hmac_sha256, verify_webhook_signature

log = structlog.get_logger()

CONFIRMATION_URL = "http://localhost:3000/payment/confirm/{payment_id}"


@dataclass
class MockPaymentState:
    id: str
    amount: int
    currency: str
    status: str  # pending | succeeded | failed | refunded
    description: str
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    refunded_at: datetime | None = None


class MockGateway:
    name = "mock"
    signature_scheme = "hmac-sha256"

    def __init__(
        self,
        webhook_secret: str = "mock-secret-key",
        simulate_error: bool = False,
        delay_ms: int = 0,
    ) -> None:
        self._webhook_secret = webhook_secret
        self.simulate_error = simulate_error
        self.delay_ms = delay_ms
        self.payments: dict[str, MockPaymentState] = {}

    async def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult:
        await self._delay()
        if self.simulate_error:
            log.error("provider_request_failed", provider=self.name, detail="simulated error")
            raise ProviderError(self.name, "Payment simulation failed: insufficient funds")

        payment_id = f"mock_payment_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        self.payments[payment_id] = MockPaymentState(
            id=payment_id,
            amount=request.amount,
            currency=request.currency,
            status="pending",
            description=request.description,
            metadata={"user_id": request.user_id, **request.metadata},
        )
        log.info("mock_payment_created", payment_id=payment_id, amount=request.amount)
        return CreatePaymentResult(
            payment_id=payment_id,
            confirmation_url=CONFIRMATION_URL.format(payment_id=payment_id),
            confirmation_data={"mock": True, "paymentId": payment_id},
        )

    async def get_payment_status(self, payment_id: str) -> PaymentIntent:
        await self._delay()
        payment = self._get(payment_id)
        # A refunded mock payment reports as succeeded, like a captured charge
        status = {"refunded": "succeeded"}.get(payment.status, payment.status)
        return PaymentIntent(
            id=payment.id,
            amount=payment.amount,
            currency=payment.currency,
            status=status,
            description=payment.description,
            metadata=dict(payment.metadata),
        )

    async def refund(self, request: RefundRequest) -> None:
        await self._delay()
        payment = self._get(request.payment_id)
        if payment.status != "succeeded":
            raise ProviderError(self.name, "Can only refund succeeded payments")
        payment.status = "refunded"
        payment.refunded_at = utcnow()
        log.info("refund_requested", provider=self.name, payment_id=payment.id, amount=request.amount)

    async def handle_webhook(self, raw_body: bytes, signature: str) -> PaymentWebhook:
        verify_webhook_signature(
            self.name, self.signature_scheme, raw_body, signature, self._webhook_secret,
        )
        try:
            body = json.loads(raw_body)
            obj = body["object"]
            return PaymentWebhook(
                payment_id=obj["id"],
                status=obj["status"],
                amount=int(obj["amount"]),
                currency=obj["currency"],
                metadata=obj.get("metadata") or {},
                raw_body=body,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(self.name, "Malformed webhook payload") from exc

    async def health_check(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def confirm_payment(self, payment_id: str) -> MockPaymentState:
        """Mark a payment as paid by the customer."""
        payment = self._get(payment_id)
        payment.status = "succeeded"
        payment.confirmed_at = utcnow()
        return payment

    def build_webhook(self, payment_id: str, status: str | None = None) -> tuple[bytes, str]:
        """Serialize the callback for *payment_id* and sign it.

        Returns ``(raw_body, signature)`` ready to POST to the webhook route.
        """
        payment = self._get(payment_id)
        status = status or payment.status
        body = json.dumps({
            "provider": self.name,
            "event": f"payment.{status}",
            "object": {
                "id": payment.id,
                "status": status,
                "amount": payment.amount,
                "currency": payment.currency,
                "metadata": payment.metadata,
            },
        }).encode("utf-8")
        return body, sign_hmac_sha256(body, self._webhook_secret)

    def clear_state(self) -> None:
        self.payments.clear()

    def _get(self, payment_id: str) -> MockPaymentState:
        try:
            return self.payments[payment_id]
        except KeyError:
            raise ProviderError(self.name, f"Payment not found: {payment_id}") from None

    async def _delay(self) -> None:
        if self.delay_ms:
            await asyncio.sleep(self.delay_ms / 1000)
