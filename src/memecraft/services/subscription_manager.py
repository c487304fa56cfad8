"""Subscription lifecycle, plan tables and plan-based limits.

State machine for ``Subscription.status``:

    (none) -> active | trialing
           -> [cancel_at_period_end set]
           -> (read after current_period_end) -> expired, plan=free
           -> (create / renew) -> active

``cancelled`` is only reachable through immediate cancellation and stays put
until the subscription is renewed or re-created.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.errors import NoActiveSubscription, ValidationFailed
from memecraft.models import Subscription
from memecraft.models.base import as_utc, upsert_insert, utcnow
from memecraft.services.audit_logger import AuditLogger
from memecraft.services.credit_ledger import CreditLedger

log = structlog.get_logger()

PlanType = Literal["free", "premium", "pro"]
SubscriptionStatus = Literal["active", "trialing", "cancelled", "expired"]

PLAN_ORDER: dict[str, int] = {"free": 0, "premium": 1, "pro": 2}

# Monthly price in major currency units
PLAN_PRICES: dict[str, int] = {"free": 0, "premium": 299, "pro": 599}

BILLING_PERIOD = timedelta(days=30)

ACTIVE_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class PlanLimits:
    """Feature limits of a plan. ``None`` means unlimited."""

    ai_generations_per_day: Optional[int]
    saved_memes: Optional[int]
    max_resolution: int
    watermark: bool
    priority: str


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(
        ai_generations_per_day=3,
        saved_memes=10,
        max_resolution=512,
        watermark=True,
        priority="normal",
    ),
    "premium": PlanLimits(
        ai_generations_per_day=50,
        saved_memes=None,
        max_resolution=1024,
        watermark=False,
        priority="high",
    ),
    "pro": PlanLimits(
        ai_generations_per_day=None,
        saved_memes=None,
        max_resolution=2048,
        watermark=False,
        priority="vip",
    ),
}


@dataclass(frozen=True)
class GenerationLimit:
    allowed: bool
    remaining: Optional[int]
    reset_at: datetime


def plan_rank(plan: str) -> int:
    try:
        return PLAN_ORDER[plan]
    except KeyError:
        raise ValidationFailed(f"Unknown plan: {plan}") from None


def get_plan_limits(plan: str) -> PlanLimits:
    plan_rank(plan)
    return PLAN_LIMITS[plan]


def get_plan_price(plan: str) -> int:
    plan_rank(plan)
    return PLAN_PRICES[plan]


class SubscriptionManager:
    """Owns the per-user subscription row.

    ``clock`` is injectable so expiry can be exercised deterministically.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: CreditLedger | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger or CreditLedger(db, audit)
        self._audit = audit or AuditLogger()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        user_id: str,
        plan: str,
        trial_days: int = 0,
    ) -> Subscription:
        """Create or replace the user's subscription and clear any cancellation."""
        plan_rank(plan)
        now = self._clock()
        if trial_days > 0:
            status = "trialing"
            period_end = now + timedelta(days=trial_days)
        else:
            status = "active"
            period_end = now + BILLING_PERIOD

        values = {
            "plan": plan,
            "status": status,
            "current_period_end": period_end,
            "cancel_at_period_end": False,
            "cancelled_at": None,
            "updated_at": now,
        }
        insert_stmt = upsert_insert(self._db)
        stmt = insert_stmt(Subscription).values(user_id=user_id, created_at=now, **values)
        await self._db.execute(
            stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
        )

        self._audit.log_subscription_event(user_id, "created", plan, status)
        return await self._load(user_id)

    async def get_subscription(self, user_id: str) -> Subscription:
        """Return the subscription, defaulting to free and applying lazy expiry.

        An ``active`` subscription whose period has ended is moved to
        ``expired`` on the free plan. The transition is a conditional UPDATE,
        so repeated or concurrent reads converge on the same state.
        """
        now = self._clock()
        insert_stmt = upsert_insert(self._db)
        await self._db.execute(
            insert_stmt(Subscription)
            .values(
                user_id=user_id,
                plan="free",
                status="active",
                cancel_at_period_end=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )

        result = await self._db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == "active",
                Subscription.current_period_end.is_not(None),
                Subscription.current_period_end < now,
            )
            .values(status="expired", plan="free", current_period_end=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            log.info("subscription_expired", user_id=user_id)
            self._audit.log_subscription_event(user_id, "expired", "free", "expired")

        return await self._load(user_id)

    async def update_subscription(
        self,
        user_id: str,
        plan: str | None = None,
        status: str | None = None,
        cancel_at_period_end: bool | None = None,
    ) -> Subscription:
        """Partially update the subscription.

        Changing the plan restarts the billing period; there is no proration.
        """
        now = self._clock()
        values: dict = {"updated_at": now}
        if plan is not None:
            plan_rank(plan)
            values["plan"] = plan
            values["current_period_end"] = now + BILLING_PERIOD
        if status is not None:
            if status not in ("active", "trialing", "cancelled", "expired"):
                raise ValidationFailed(f"Unknown subscription status: {status}")
            values["status"] = status
        if cancel_at_period_end is not None:
            values["cancel_at_period_end"] = cancel_at_period_end
            if cancel_at_period_end:
                values["cancelled_at"] = now

        await self.get_subscription(user_id)
        await self._write(user_id, values)
        return await self._load(user_id)

    async def cancel_subscription(self, user_id: str, immediate: bool = False) -> Subscription:
        """Cancel now, or at the end of the current period (default)."""
        subscription = await self.get_subscription(user_id)
        if subscription.plan == "free":
            raise NoActiveSubscription("No active subscription to cancel")

        now = self._clock()
        if immediate:
            await self._write(user_id, {
                "status": "cancelled",
                "cancel_at_period_end": False,
                "cancelled_at": now,
                "current_period_end": now,
                "updated_at": now,
            })
        else:
            await self._write(user_id, {
                "cancel_at_period_end": True,
                "cancelled_at": now,
                "updated_at": now,
            })

        subscription = await self._load(user_id)
        self._audit.log_subscription_event(
            user_id,
            "cancelled_now" if immediate else "cancel_at_period_end",
            subscription.plan,
            subscription.status,
        )
        return subscription

    async def renew_subscription(self, user_id: str) -> Subscription:
        """Start a fresh 30-day period on the current paid plan."""
        subscription = await self.get_subscription(user_id)
        if subscription.plan == "free":
            raise NoActiveSubscription("No active subscription to renew")

        now = self._clock()
        await self._write(user_id, {
            "status": "active",
            "current_period_end": now + BILLING_PERIOD,
            "cancel_at_period_end": False,
            "cancelled_at": None,
            "updated_at": now,
        })
        subscription = await self._load(user_id)
        self._audit.log_subscription_event(user_id, "renewed", subscription.plan, "active")
        return subscription

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def has_active_subscription(self, user_id: str, plan: str | None = None) -> bool:
        """True if the subscription is live and, when *plan* is given, at least that tier."""
        subscription = await self.get_subscription(user_id)
        if subscription.status not in ACTIVE_STATUSES:
            return False
        period_end = as_utc(subscription.current_period_end)
        if period_end is not None and self._clock() > period_end:
            return False
        if plan is not None:
            return plan_rank(subscription.plan) >= plan_rank(plan)
        return True

    async def check_generation_limit(self, user_id: str) -> GenerationLimit:
        """Compare today's AI generations against the plan's daily quota.

        Usage is the number of ``generation`` ledger transactions since UTC
        midnight; the quota resets at the next UTC midnight.
        """
        quota, used_today, reset_at = await self._daily_generations(user_id)
        if quota is None:
            return GenerationLimit(allowed=True, remaining=None, reset_at=reset_at)

        remaining = max(0, quota - used_today)
        return GenerationLimit(allowed=remaining > 0, remaining=remaining, reset_at=reset_at)

    async def generation_quota_exceeded(self, user_id: str) -> bool:
        """Whether today's generations already go past the daily quota.

        Meant to run after the debit, inside the same transaction. The debit
        holds the balance row lock, so concurrent charges for one user are
        recounted one at a time.
        """
        quota, used_today, _ = await self._daily_generations(user_id)
        return quota is not None and used_today > quota

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _daily_generations(
        self, user_id: str,
    ) -> tuple[Optional[int], int, datetime]:
        """Return ``(quota, used_today, reset_at)``; ``quota`` is None when unlimited."""
        subscription = await self.get_subscription(user_id)
        quota = PLAN_LIMITS[subscription.plan].ai_generations_per_day

        now = self._clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        reset_at = day_start + timedelta(days=1)

        if quota is None:
            return None, 0, reset_at
        used_today = await self._ledger.count_transactions_since(
            user_id, "generation", day_start,
        )
        return quota, used_today, reset_at

    async def _write(self, user_id: str, values: dict) -> None:
        await self._db.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _load(self, user_id: str) -> Subscription:
        result = await self._db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
