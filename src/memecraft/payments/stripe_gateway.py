"""Stripe adapter (embedded Payment Element flow).

The stripe SDK is synchronous, so every call runs in a worker thread and is
bounded by the configured timeout. The API key is passed per call rather than
set on the module, which keeps several configured gateways independent.
"""

from __future__ import annotations

import asyncio
import json
from functools import partial
from typing import Any

import stripe
import structlog

from memecraft.errors import ProviderError
from memecraft.payments.base import (
    CreatePaymentRequest,
    CreatePaymentResult,
    IntentStatus,
    PaymentIntent,
    PaymentWebhook,
    RefundRequest,
    WebhookStatus,
)
from memecraft.payments.signatures import verify_webhook_signature

log = structlog.get_logger()

_INTENT_STATUS: dict[str, IntentStatus] = {
    "succeeded": "succeeded",
    "processing": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "requires_capture": "pending",
    "requires_payment_method": "failed",
    "canceled": "failed",
}

_WEBHOOK_EVENTS: dict[str, WebhookStatus] = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "failed",
    "charge.refunded": "refunded",
}


class StripeGateway:
    """Payment provider backed by Stripe PaymentIntents."""

    name = "stripe"
    signature_scheme = "stripe-v1"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        timeout: float = 15.0,
        allow_unsigned: bool = False,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout
        self._allow_unsigned = allow_unsigned

    async def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=request.amount,
            currency=request.currency.lower(),
            description=request.description,
            metadata={"user_id": request.user_id, **request.metadata},
            automatic_payment_methods={"enabled": True},
        )
        return CreatePaymentResult(
            payment_id=intent["id"],
            confirmation_data={"clientSecret": intent["client_secret"]},
        )

    async def get_payment_status(self, payment_id: str) -> PaymentIntent:
        intent = await self._call(stripe.PaymentIntent.retrieve, payment_id)
        return PaymentIntent(
            id=intent["id"],
            amount=intent["amount"],
            currency=intent["currency"].upper(),
            status=_INTENT_STATUS.get(intent["status"], "pending"),
            description=intent.get("description"),
            metadata=dict(intent.get("metadata") or {}),
        )

    async def refund(self, request: RefundRequest) -> None:
        params: dict[str, Any] = {"payment_intent": request.payment_id}
        if request.amount is not None:
            params["amount"] = request.amount
        if request.description:
            params["metadata"] = {"description": request.description}
        await self._call(stripe.Refund.create, **params)
        log.info("refund_requested", provider=self.name, payment_id=request.payment_id, amount=request.amount)

    async def handle_webhook(self, raw_body: bytes, signature: str) -> PaymentWebhook:
        verify_webhook_signature(
            self.name, self.signature_scheme, raw_body, signature,
            self._webhook_secret, self._allow_unsigned,
        )
        try:
            event = json.loads(raw_body)
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(self.name, "Malformed webhook payload") from exc

        event_type = event.get("type", "")
        if not isinstance(obj, dict) or not isinstance(event_type, str):
            raise ProviderError(self.name, "Malformed webhook payload")
        if event_type.startswith("charge."):
            # Charge objects point back at the intent the payment was created as
            payment_id = obj.get("payment_intent")
            amount = obj.get("amount_refunded") or obj.get("amount", 0)
        else:
            payment_id = obj.get("id")
            amount = obj.get("amount", 0)
        if not payment_id:
            raise ProviderError(self.name, f"Webhook without payment reference: {event_type!r}")

        return PaymentWebhook(
            payment_id=payment_id,
            status=_WEBHOOK_EVENTS.get(event_type, "pending"),
            amount=amount,
            currency=(obj.get("currency") or "").upper(),
            metadata=obj.get("metadata") or {},
            raw_body=event,
        )

    async def health_check(self) -> bool:
        try:
            await self._call(stripe.Balance.retrieve)
        except ProviderError:
            return False
        return True

    async def _call(self, fn, *args, **kwargs) -> Any:
        call = partial(fn, *args, api_key=self._secret_key, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            log.error("provider_timeout", provider=self.name, call=_call_name(fn))
            raise ProviderError(self.name, f"Timed out after {self._timeout}s") from exc
        except stripe.StripeError as exc:
            log.error(
                "provider_request_failed",
                provider=self.name,
                call=_call_name(fn),
                detail=exc.user_message or str(exc),
            )
            raise ProviderError(self.name, str(exc)) from exc


def _call_name(fn) -> str:
    return getattr(fn, "__qualname__", repr(fn))
