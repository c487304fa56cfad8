"""Provider-neutral payment types and the provider contract.

Amounts are always integers in the minor currency unit (kopecks, cents).
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Protocol, runtime_checkable

IntentStatus = Literal["pending", "succeeded", "failed", "cancelled"]
WebhookStatus = Literal["pending", "succeeded", "failed", "refunded"]


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass
class CreatePaymentRequest:
    amount: int
    currency: str
    description: str
    user_id: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class CreatePaymentResult:
    """Handle returned to the client.

    ``confirmation_url`` is set by redirect-flow providers,
    ``confirmation_data`` by embedded-widget providers.
    """

    payment_id: str
    confirmation_url: str | None = None
    confirmation_data: dict[str, Any] | None = None


@dataclass
class PaymentIntent:
    id: str
    amount: int
    currency: str
    status: IntentStatus
    description: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class RefundRequest:
    payment_id: str
    amount: int | None = None  # full refund when omitted
    description: str | None = None


@dataclass
class PaymentWebhook:
    payment_id: str
    status: WebhookStatus
    amount: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_body: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------

@runtime_checkable
class PaymentProvider(Protocol):
    """Structural interface every payment processor adapter implements.

    ``signature_scheme`` names the verifier in
    ``memecraft.payments.signatures.SIGNATURE_VERIFIERS`` that
    ``handle_webhook`` must pass before trusting a callback.
    """

    name: str
    signature_scheme: str

    async def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult: ...

    async def get_payment_status(self, payment_id: str) -> PaymentIntent: ...

    async def refund(self, request: RefundRequest) -> None: ...

    async def handle_webhook(self, raw_body: bytes, signature: str) -> PaymentWebhook: ...

    async def health_check(self) -> bool: ...


# ---------------------------------------------------------------------------
# Helpers shared by adapters
# ---------------------------------------------------------------------------

def to_major_units(minor: int) -> str:
    """1999 -> "19.99" (string, as decimal-amount APIs expect)."""
    return str((Decimal(minor) / 100).quantize(Decimal("0.01")))


def to_minor_units(major: str | int | float) -> int:
    """"19.99" -> 1999."""
    value = Decimal(str(major)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def new_idempotency_key(prefix: str = "payment") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
