"""Payment orchestration -- create-payment and webhook reconciliation flows.

Payments move through a small state machine:

    pending -> succeeded -> refunded
    pending -> failed -> succeeded   (late capture after a failed attempt)

Every transition is a conditional UPDATE on the current status, so a
duplicated or reordered webhook delivery either performs the transition once
or does nothing. Credits and subscriptions are granted only by the call that
actually moved the payment to ``succeeded``.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.errors import PaymentNotFound, ValidationFailed
from memecraft.models import Payment, PromoCode
from memecraft.models.base import as_utc, utcnow
from memecraft.payments.base import CreatePaymentRequest, RefundRequest
from memecraft.payments.factory import PaymentProviderFactory
from memecraft.services.audit_logger import AuditLogger
from memecraft.services.credit_ledger import CreditLedger, get_credit_pack_price
from memecraft.services.subscription_manager import SubscriptionManager, get_plan_price

log = structlog.get_logger()

PaymentType = Literal["credits", "subscription"]

PAID_PLANS = ("premium", "pro")

# Target status -> statuses it may be reached from
TRANSITIONS: dict[str, tuple[str, ...]] = {
    "succeeded": ("pending", "failed"),
    "failed": ("pending",),
    "refunded": ("succeeded",),
}

# Local statuses that a provider poll can still move forward
SYNCABLE_STATUSES = ("pending", "failed")

# Canonical provider intent status -> local payment status
_INTENT_TO_PAYMENT = {
    "succeeded": "succeeded",
    "failed": "failed",
    "cancelled": "failed",
}


@dataclass
class PaymentOrder:
    """What the customer asked to buy."""

    type: PaymentType
    amount: Optional[int] = None
    plan: Optional[str] = None
    provider: Optional[str] = None
    promo_code: Optional[str] = None


@dataclass
class Quote:
    amount: int  # minor units
    description: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class CreatedPayment:
    id: str
    payment_id: str
    amount: int
    currency: str
    confirmation_url: Optional[str] = None
    confirmation_data: Optional[dict[str, Any]] = None


@dataclass
class WebhookOutcome:
    payment_id: Optional[str]
    status: str
    applied: bool


class PaymentService:
    """Coordinates the ledger, subscriptions and payment providers.

    All writes share the caller's session; the request (or webhook delivery)
    commits or rolls back as one unit.
    """

    def __init__(
        self,
        db: AsyncSession,
        factory: PaymentProviderFactory,
        ledger: CreditLedger,
        subscriptions: SubscriptionManager,
        currency: str = "RUB",
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db
        self._factory = factory
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._currency = currency
        self._audit = audit or AuditLogger()

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def quote(self, order: PaymentOrder) -> Quote:
        """Price an order from the static pack and plan tables."""
        if order.type == "credits":
            if not order.amount:
                raise ValidationFailed("Credit amount is required")
            price = get_credit_pack_price(order.amount)
            if price is None:
                raise ValidationFailed(f"Unknown credit pack: {order.amount}")
            return Quote(
                amount=price * 100,
                description=f"Purchase of {order.amount} credits",
                metadata={"type": "credits", "credits": str(order.amount)},
            )

        if order.type == "subscription":
            if not order.plan:
                raise ValidationFailed("Subscription plan is required")
            if order.plan not in PAID_PLANS:
                raise ValidationFailed(f"Unknown subscription plan: {order.plan}")
            return Quote(
                amount=get_plan_price(order.plan) * 100,
                description=f"{order.plan} subscription for 30 days",
                metadata={"type": "subscription", "plan": order.plan},
            )

        raise ValidationFailed(f"Unknown payment type: {order.type}")

    async def apply_promo_code(self, quote: Quote, code: str) -> Quote:
        """Apply a discount code to *quote*.

        Unknown and inactive codes are ignored. Expired or used-up codes are
        rejected. Usage is counted when the payment succeeds, not here.
        """
        code = code.strip().upper()
        promo = await self._db.get(PromoCode, code)
        if promo is None or not promo.is_active:
            log.info("promo_code_ignored", code=code)
            return quote

        expires_at = as_utc(promo.expires_at)
        if expires_at is not None and utcnow() > expires_at:
            raise ValidationFailed("Promo code has expired")
        if promo.used_count >= promo.max_uses:
            raise ValidationFailed("Promo code is no longer valid")

        if promo.promo_type != "discount":
            return quote

        discounted = math.floor(quote.amount * (100 - promo.value) / 100 + 0.5)
        return Quote(
            amount=discounted,
            description=quote.description,
            metadata={**quote.metadata, "promoCode": code, "discount": str(promo.value)},
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_payment(self, user_id: str, order: PaymentOrder) -> CreatedPayment:
        """Open a provider-side payment and record it locally as pending.

        The local row is written only after the provider accepted the
        payment, so a provider failure leaves nothing behind.
        """
        quote = self.quote(order)
        if order.promo_code:
            quote = await self.apply_promo_code(quote, order.promo_code)

        provider = self._factory.get_provider(order.provider)
        result = await provider.create_payment(CreatePaymentRequest(
            amount=quote.amount,
            currency=self._currency,
            description=quote.description,
            user_id=user_id,
            metadata=quote.metadata,
        ))

        payment = Payment(
            user_id=user_id,
            amount=quote.amount,
            currency=self._currency,
            status="pending",
            provider=provider.name,
            provider_payment_id=result.payment_id,
            description=quote.description,
            payment_metadata=json.dumps(quote.metadata),
        )
        self._db.add(payment)
        await self._db.flush()

        log.info(
            "payment_created",
            payment_id=payment.id,
            provider=provider.name,
            provider_payment_id=result.payment_id,
            amount=quote.amount,
        )
        self._audit.log_payment_event(
            payment.id, user_id, provider.name, "pending", amount=quote.amount,
        )
        return CreatedPayment(
            id=payment.id,
            payment_id=result.payment_id,
            amount=quote.amount,
            currency=self._currency,
            confirmation_url=result.confirmation_url,
            confirmation_data=result.confirmation_data,
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def process_webhook(
        self,
        raw_body: bytes,
        signature: str,
        provider_name: str | None = None,
    ) -> WebhookOutcome:
        """Verify a provider callback and apply it to the local payment.

        Callbacks for payments this service never created are acknowledged
        and ignored.
        """
        payload = None
        if not provider_name:
            try:
                payload = json.loads(raw_body)
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}
        provider = self._factory.resolve_webhook_provider(provider_name, payload)

        webhook = await provider.handle_webhook(raw_body, signature)

        result = await self._db.execute(
            select(Payment)
            .where(
                Payment.provider == provider.name,
                Payment.provider_payment_id == webhook.payment_id,
            )
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            log.warning(
                "webhook_payment_unknown",
                provider=provider.name,
                provider_payment_id=webhook.payment_id,
            )
            return WebhookOutcome(payment_id=None, status=webhook.status, applied=False)

        if webhook.status == "succeeded" and webhook.amount and webhook.amount != payment.amount:
            log.warning(
                "webhook_amount_mismatch",
                payment_id=payment.id,
                expected=payment.amount,
                received=webhook.amount,
            )

        applied = await self._transition(payment, webhook.status)
        return WebhookOutcome(payment_id=payment.id, status=webhook.status, applied=applied)

    async def sync_payment_status(self, payment_id: str, user_id: str | None = None) -> Payment:
        """Poll the provider for a payment and apply whatever it reports.

        Covers callbacks that never arrived; safe to call repeatedly. A
        ``failed`` payment is polled again: Stripe reports an unconfirmed
        intent the same way as a declined one, and both may still succeed.
        """
        payment = await self._get_payment(payment_id, user_id)
        if payment.status not in SYNCABLE_STATUSES:
            return payment

        provider = self._factory.get_provider(payment.provider)
        intent = await provider.get_payment_status(payment.provider_payment_id)
        target = _INTENT_TO_PAYMENT.get(intent.status)
        if target is not None:
            await self._transition(payment, target)
        return await self._get_payment(payment_id)

    async def refund_payment(
        self,
        payment_id: str,
        amount: int | None = None,
        description: str | None = None,
    ) -> Payment:
        """Ask the provider to refund a succeeded payment.

        The local status becomes ``refunded`` when the provider's refund
        callback arrives. Granted credits are not taken back.
        """
        payment = await self._get_payment(payment_id)
        if payment.status != "succeeded":
            raise ValidationFailed("Only succeeded payments can be refunded", status=payment.status)
        if amount is not None and not 0 < amount <= payment.amount:
            raise ValidationFailed("Refund amount out of range", amount=amount)

        provider = self._factory.get_provider(payment.provider)
        await provider.refund(RefundRequest(
            payment_id=payment.provider_payment_id,
            amount=amount,
            description=description,
        ))
        log.info("payment_refund_requested", payment_id=payment.id, amount=amount or payment.amount)
        return payment

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _transition(self, payment: Payment, target: str) -> bool:
        """Move *payment* to *target* if allowed from its current status.

        Returns True only for the call that performed the transition.
        """
        allowed_from = TRANSITIONS.get(target)
        if allowed_from is None:
            log.info("payment_status_ignored", payment_id=payment.id, status=target)
            return False

        previous = payment.status
        result = await self._db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(allowed_from))
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            log.info(
                "payment_transition_skipped",
                payment_id=payment.id,
                status=previous,
                target=target,
            )
            return False

        self._audit.log_payment_event(
            payment.id, payment.user_id, payment.provider, target,
            amount=payment.amount, previous_status=previous,
        )
        if target == "succeeded":
            await self._grant(payment)
        return True

    async def _grant(self, payment: Payment) -> None:
        metadata = json.loads(payment.payment_metadata or "{}")
        kind = metadata.get("type")

        if kind == "credits":
            await self._ledger.add_credits(
                payment.user_id,
                int(metadata["credits"]),
                "purchase",
                f"Credit purchase (payment {payment.id})",
            )
        elif kind == "subscription":
            await self._subscriptions.create_subscription(payment.user_id, metadata["plan"])
        else:
            log.error("payment_metadata_unrecognized", payment_id=payment.id, type=kind)

        if metadata.get("promoCode"):
            await self._redeem_promo_code(metadata["promoCode"], payment.id)

    async def _redeem_promo_code(self, code: str, payment_id: str) -> None:
        result = await self._db.execute(
            update(PromoCode)
            .where(PromoCode.code == code, PromoCode.used_count < PromoCode.max_uses)
            .values(used_count=PromoCode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        redeemed = result.rowcount == 1
        if not redeemed:
            # Paid at the discounted price already; the grant stands
            log.warning("promo_code_exhausted_at_redemption", code=code, payment_id=payment_id)
        self._audit.log_promo_redemption(code, payment_id, redeemed)

    async def _get_payment(self, payment_id: str, user_id: str | None = None) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == user_id)
        result = await self._db.execute(stmt)
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return payment
