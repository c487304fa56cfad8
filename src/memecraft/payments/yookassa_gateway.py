"""YooKassa adapter (redirect confirmation flow).

API reference: https://yookassa.ru/developers/api
Amounts travel as decimal strings in major units; everything crossing this
module's boundary is in minor units.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
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
    new_idempotency_key,
    to_major_units,
    to_minor_units,
)
from memecraft.payments.signatures import verify_webhook_signature

log = structlog.get_logger()

YOOKASSA_API_URL = "https://api.yookassa.ru/v3"

_INTENT_STATUS: dict[str, IntentStatus] = {
    "pending": "pending",
    "waiting_for_capture": "pending",
    "succeeded": "succeeded",
    "canceled": "cancelled",
    "failed": "failed",
}

_WEBHOOK_EVENTS: dict[str, WebhookStatus] = {
    "payment.succeeded": "succeeded",
    "payment.canceled": "failed",
    "payment.waiting_for_capture": "pending",
    "refund.succeeded": "refunded",
}


class YooKassaGateway:
    """Payment provider backed by the YooKassa v3 REST API."""

    name = "yookassa"
    signature_scheme = "hmac-sha256"

    def __init__(
        self,
        shop_id: str,
        api_key: str,
        webhook_secret: str = "",
        return_url: str = "http://localhost:3000/payment/success",
        timeout: float = 15.0,
        allow_unsigned: bool = False,
        base_url: str = YOOKASSA_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = (shop_id, api_key)
        self._webhook_secret = webhook_secret
        self._return_url = return_url
        self._timeout = timeout
        self._allow_unsigned = allow_unsigned
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult:
        body = {
            "amount": {
                "value": to_major_units(request.amount),
                "currency": request.currency,
            },
            "capture": True,
            "description": request.description,
            "metadata": {"user_id": request.user_id, **request.metadata},
            "confirmation": {"type": "redirect", "return_url": self._return_url},
        }
        payment = await self._request(
            "POST", "/payments", json=body,
            headers={"Idempotence-Key": new_idempotency_key()},
        )
        return CreatePaymentResult(
            payment_id=payment["id"],
            confirmation_url=(payment.get("confirmation") or {}).get("confirmation_url"),
        )

    async def get_payment_status(self, payment_id: str) -> PaymentIntent:
        payment = await self._request("GET", f"/payments/{payment_id}")
        return PaymentIntent(
            id=payment["id"],
            amount=to_minor_units(payment["amount"]["value"]),
            currency=payment["amount"]["currency"],
            status=_INTENT_STATUS.get(payment.get("status", ""), "pending"),
            description=payment.get("description"),
            metadata=payment.get("metadata") or {},
        )

    async def refund(self, request: RefundRequest) -> None:
        """Refund a captured payment; the full amount unless one is given."""
        payment = await self.get_payment_status(request.payment_id)
        amount = request.amount if request.amount is not None else payment.amount
        await self._request(
            "POST", "/refunds",
            json={
                "payment_id": request.payment_id,
                "amount": {"value": to_major_units(amount), "currency": payment.currency},
                "description": request.description or "Refund",
            },
            headers={"Idempotence-Key": new_idempotency_key("refund")},
        )
        log.info("refund_requested", provider=self.name, payment_id=request.payment_id, amount=amount)

    async def handle_webhook(self, raw_body: bytes, signature: str) -> PaymentWebhook:
        verify_webhook_signature(
            self.name, self.signature_scheme, raw_body, signature,
            self._webhook_secret, self._allow_unsigned,
        )
        body = _parse_json(self.name, raw_body)
        event = body.get("event", "")
        obj = body.get("object") or {}
        if not isinstance(event, str) or not isinstance(obj, dict):
            raise ProviderError(self.name, "Malformed webhook payload")

        if event.startswith("refund."):
            payment_id = obj.get("payment_id")
        else:
            payment_id = obj.get("id")
        if not payment_id or "amount" not in obj:
            raise ProviderError(self.name, f"Webhook without payment reference: {event!r}")

        metadata = obj.get("metadata") or {}
        try:
            amount = to_minor_units(obj["amount"]["value"])
            currency = obj["amount"]["currency"]
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise ProviderError(self.name, "Malformed webhook payload") from exc
        if not isinstance(payment_id, str) or not isinstance(metadata, dict):
            raise ProviderError(self.name, "Malformed webhook payload")

        status = _WEBHOOK_EVENTS.get(event)
        if status is None:
            status = {"succeeded": "succeeded", "canceled": "failed"}.get(str(obj.get("status")), "pending")

        return PaymentWebhook(
            payment_id=payment_id,
            status=status,
            amount=amount,
            currency=currency,
            metadata=metadata,
            raw_body=body,
        )

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "/me")
        except ProviderError:
            return False
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            log.error("provider_timeout", provider=self.name, path=path)
            raise ProviderError(self.name, f"Timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            log.error("provider_unreachable", provider=self.name, path=path, error=str(exc))
            raise ProviderError(self.name, str(exc)) from exc

        if response.is_error:
            detail = _error_description(response)
            log.error(
                "provider_request_failed",
                provider=self.name,
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise ProviderError(self.name, detail)
        return response.json()


def _parse_json(provider: str, raw_body: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw_body)
    except ValueError as exc:
        raise ProviderError(provider, "Malformed webhook payload") from exc
    if not isinstance(body, dict):
        raise ProviderError(provider, "Malformed webhook payload")
    return body


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json().get("description") or response.text
    except ValueError:
        return response.text
