"""Domain exceptions for the monetization core.

Each exception carries the HTTP status the boundary answers with and a short
machine-readable ``code``. ``extra`` holds structured remediation data
(``remaining``, ``upgradeRequired``) that is merged into the error body.
"""

from __future__ import annotations

from typing import Any


class MonetizationError(Exception):
    status_code: int = 400
    code: str = "monetization_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = {k: v for k, v in extra.items() if v is not None}

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class ValidationFailed(MonetizationError):
    status_code = 400
    code = "validation_failed"


class InvalidAmount(ValidationFailed):
    code = "invalid_amount"


class AuthenticationRequired(MonetizationError):
    status_code = 401
    code = "auth"


class SubscriptionRequired(MonetizationError):
    status_code = 403
    code = "subscription"


class InsufficientCredits(MonetizationError):
    status_code = 402
    code = "credits"


class NoActiveSubscription(MonetizationError):
    status_code = 409
    code = "no_active_subscription"


class PaymentNotFound(MonetizationError):
    status_code = 404
    code = "payment_not_found"


class ProviderNotConfigured(MonetizationError):
    status_code = 400
    code = "provider_not_configured"


class ProviderError(MonetizationError):
    """A payment processor call failed. ``message`` is safe to show users."""

    status_code = 502
    code = "provider_error"

    def __init__(self, provider: str, detail: str, message: str = "Payment processing failed") -> None:
        super().__init__(message)
        self.provider = provider
        self.detail = detail


class InvalidSignature(ProviderError):
    status_code = 400
    code = "invalid_signature"

    def __init__(self, provider: str, detail: str = "Webhook signature mismatch") -> None:
        super().__init__(provider, detail, message="Invalid webhook signature")
