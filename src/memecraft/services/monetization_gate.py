"""Pre-action policy check: authentication, plan tier, then credit balance."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from memecraft.errors import (
    AuthenticationRequired,
    InsufficientCredits,
    MonetizationError,
    SubscriptionRequired,
)
from memecraft.services.credit_ledger import CreditLedger
from memecraft.services.subscription_manager import SubscriptionManager, plan_rank

DenialReason = Literal["auth", "subscription", "credits"]


@dataclass(frozen=True)
class MonetizationLimit:
    action: str
    required_credits: int
    required_plan: Optional[str] = None


@dataclass(frozen=True)
class Denial:
    reason: DenialReason
    message: str
    remaining: Optional[int] = None
    upgrade_required: Optional[str] = None

    def to_error(self) -> MonetizationError:
        """Translate the denial into the exception the HTTP layer renders."""
        if self.reason == "auth":
            return AuthenticationRequired(self.message)
        if self.reason == "subscription":
            return SubscriptionRequired(self.message, upgradeRequired=self.upgrade_required)
        return InsufficientCredits(self.message, remaining=self.remaining)


ACTION_LIMITS: dict[str, MonetizationLimit] = {
    "generate_text": MonetizationLimit("generate_text", 1),
    "generate_image": MonetizationLimit("generate_image", 2),
    "generate_meme": MonetizationLimit("generate_meme", 3),
    "generate_meme_hd": MonetizationLimit("generate_meme_hd", 4),
    "generate_meme_ultra_hd": MonetizationLimit("generate_meme_ultra_hd", 5),
    "remove_watermark": MonetizationLimit("remove_watermark", 5),
    "priority_generation": MonetizationLimit("priority_generation", 2),
}


class MonetizationGate:
    def __init__(self, ledger: CreditLedger, subscriptions: SubscriptionManager) -> None:
        self._ledger = ledger
        self._subscriptions = subscriptions

    async def check(self, user_id: str | None, limit: MonetizationLimit) -> Denial | None:
        """Return the first failing check, or None when the action may proceed.

        Checks never mutate balances; the caller spends credits afterwards.
        """
        if not user_id:
            return Denial(reason="auth", message="Authentication required")

        if limit.required_plan:
            if not await self._subscriptions.has_active_subscription(user_id, limit.required_plan):
                subscription = await self._subscriptions.get_subscription(user_id)
                upgrade = None
                if plan_rank(limit.required_plan) > plan_rank(subscription.plan):
                    upgrade = limit.required_plan
                return Denial(
                    reason="subscription",
                    message=f"A {limit.required_plan} subscription is required",
                    upgrade_required=upgrade,
                )

        if limit.required_credits > 0:
            if not await self._ledger.has_enough_credits(user_id, limit.required_credits):
                balance = await self._ledger.get_balance(user_id)
                return Denial(
                    reason="credits",
                    message=(
                        f"Insufficient credits. Required: {limit.required_credits}, "
                        f"available: {balance.balance}"
                    ),
                    remaining=balance.balance,
                )

        return None
