"""Structured audit logger for credit, payment and subscription events.

Every entry is emitted via structlog as an ``audit_event`` carrying
``audit: true`` so production log pipelines can filter on it.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog


log = structlog.get_logger()


class AuditLogger:
    """Structured audit logger for monetization events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Credit ledger
    # ------------------------------------------------------------------

    def log_credit_event(
        self,
        user_id: str,
        amount: int,
        txn_type: str,
        balance_after: int,
    ) -> None:
        """Log a ledger mutation (purchase, generation, referral, bonus, refund)."""
        log.info(
            "audit_event",
            event_type="credit_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=user_id,
            amount=amount,
            txn_type=txn_type,
            balance_after=balance_after,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def log_payment_event(
        self,
        payment_id: str,
        user_id: str,
        provider: str,
        status: str,
        amount: int | None = None,
        previous_status: str | None = None,
    ) -> None:
        """Record a payment creation or status transition."""
        log.info(
            "audit_event",
            event_type="payment",
            timestamp=datetime.now(timezone.utc).isoformat(),
            payment_id=payment_id,
            user_id=user_id,
            provider=provider,
            status=status,
            previous_status=previous_status,
            amount=amount,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def log_subscription_event(
        self,
        user_id: str,
        action: str,
        plan: str,
        status: str,
    ) -> None:
        """Log a subscription lifecycle change (created, cancelled, renewed, expired)."""
        log.info(
            "audit_event",
            event_type="subscription",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=user_id,
            action=action,
            plan=plan,
            status=status,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Promo codes
    # ------------------------------------------------------------------

    def log_promo_redemption(self, code: str, payment_id: str, redeemed: bool) -> None:
        log.info(
            "audit_event",
            event_type="promo_redemption",
            timestamp=datetime.now(timezone.utc).isoformat(),
            code=code,
            payment_id=payment_id,
            redeemed=redeemed,
            audit=True,
        )
