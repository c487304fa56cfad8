"""Tests for subscription lifecycle, lazy expiry and plan-based limits."""

from __future__ import annotations

from datetime import timedelta

import pytest

from memecraft.errors import NoActiveSubscription, ValidationFailed
from memecraft.models.base import as_utc, utcnow
from memecraft.services.credit_ledger import CreditLedger
from memecraft.services.subscription_manager import (
    PLAN_LIMITS,
    SubscriptionManager,
    get_plan_limits,
    get_plan_price,
    plan_rank,
)

USER = "user-sub"


@pytest.fixture
def manager(db_session, clock):
    return SubscriptionManager(db_session, CreditLedger(db_session), clock=clock)


# ---------------------------------------------------------------------------
# Plan tables
# ---------------------------------------------------------------------------

def test_plan_ordering():
    assert plan_rank("free") < plan_rank("premium") < plan_rank("pro")


def test_plan_prices():
    assert get_plan_price("free") == 0
    assert get_plan_price("premium") == 299
    assert get_plan_price("pro") == 599


def test_unknown_plan_rejected():
    with pytest.raises(ValidationFailed):
        get_plan_limits("enterprise")


def test_plan_limits_unlimited_is_none():
    assert PLAN_LIMITS["free"].ai_generations_per_day == 3
    assert PLAN_LIMITS["free"].watermark is True
    assert PLAN_LIMITS["premium"].ai_generations_per_day == 50
    assert PLAN_LIMITS["premium"].saved_memes is None
    assert PLAN_LIMITS["pro"].ai_generations_per_day is None
    assert PLAN_LIMITS["pro"].max_resolution == 2048


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_default_subscription_is_free_and_active(manager):
    subscription = await manager.get_subscription(USER)

    assert subscription.plan == "free"
    assert subscription.status == "active"
    assert subscription.current_period_end is None


@pytest.mark.asyncio
async def test_create_subscription_sets_thirty_day_period(manager, clock):
    subscription = await manager.create_subscription(USER, "premium")

    assert subscription.plan == "premium"
    assert subscription.status == "active"
    assert as_utc(subscription.current_period_end) == clock.now + timedelta(days=30)
    assert subscription.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_create_with_trial(manager, clock):
    subscription = await manager.create_subscription(USER, "pro", trial_days=7)

    assert subscription.status == "trialing"
    assert as_utc(subscription.current_period_end) == clock.now + timedelta(days=7)


@pytest.mark.asyncio
async def test_create_replaces_existing_and_clears_cancellation(manager):
    await manager.create_subscription(USER, "premium")
    await manager.cancel_subscription(USER)

    subscription = await manager.create_subscription(USER, "pro")

    assert subscription.plan == "pro"
    assert subscription.cancel_at_period_end is False
    assert subscription.cancelled_at is None


@pytest.mark.asyncio
async def test_expired_subscription_downgrades_on_read(manager, clock):
    await manager.create_subscription(USER, "premium")
    clock.now += timedelta(days=31)

    first = await manager.get_subscription(USER)
    second = await manager.get_subscription(USER)

    assert first.plan == second.plan == "free"
    assert first.status == second.status == "expired"
    assert second.current_period_end is None


@pytest.mark.asyncio
async def test_subscription_within_period_not_expired(manager, clock):
    await manager.create_subscription(USER, "premium")
    clock.now += timedelta(days=29)

    subscription = await manager.get_subscription(USER)

    assert subscription.plan == "premium"
    assert subscription.status == "active"


@pytest.mark.asyncio
async def test_update_plan_restarts_period(manager, clock):
    await manager.create_subscription(USER, "premium")
    clock.now += timedelta(days=10)

    subscription = await manager.update_subscription(USER, plan="pro")

    assert subscription.plan == "pro"
    assert as_utc(subscription.current_period_end) == clock.now + timedelta(days=30)


@pytest.mark.asyncio
async def test_update_cancel_flag_stamps_cancelled_at(manager, clock):
    await manager.create_subscription(USER, "premium")

    subscription = await manager.update_subscription(USER, cancel_at_period_end=True)

    assert subscription.cancel_at_period_end is True
    assert as_utc(subscription.cancelled_at) == clock.now


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_access(manager):
    await manager.create_subscription(USER, "premium")

    subscription = await manager.cancel_subscription(USER)

    assert subscription.status == "active"
    assert subscription.cancel_at_period_end is True
    assert subscription.cancelled_at is not None
    assert await manager.has_active_subscription(USER, "premium") is True


@pytest.mark.asyncio
async def test_cancel_immediately(manager, clock):
    await manager.create_subscription(USER, "premium")

    subscription = await manager.cancel_subscription(USER, immediate=True)

    assert subscription.status == "cancelled"
    assert as_utc(subscription.current_period_end) == clock.now
    assert await manager.has_active_subscription(USER) is False


@pytest.mark.asyncio
async def test_cancel_free_plan_raises(manager):
    with pytest.raises(NoActiveSubscription):
        await manager.cancel_subscription(USER)


@pytest.mark.asyncio
async def test_renew_starts_new_period(manager, clock):
    await manager.create_subscription(USER, "premium")
    await manager.cancel_subscription(USER, immediate=True)
    clock.now += timedelta(days=1)

    subscription = await manager.renew_subscription(USER)

    assert subscription.status == "active"
    assert subscription.cancel_at_period_end is False
    assert as_utc(subscription.current_period_end) == clock.now + timedelta(days=30)


@pytest.mark.asyncio
async def test_renew_free_plan_raises(manager):
    with pytest.raises(NoActiveSubscription):
        await manager.renew_subscription(USER)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_has_active_subscription_respects_plan_rank(manager):
    await manager.create_subscription(USER, "premium")

    assert await manager.has_active_subscription(USER) is True
    assert await manager.has_active_subscription(USER, "free") is True
    assert await manager.has_active_subscription(USER, "premium") is True
    assert await manager.has_active_subscription(USER, "pro") is False


@pytest.mark.asyncio
async def test_generation_limit_counts_todays_generations(db_session):
    manager = SubscriptionManager(db_session)
    ledger = CreditLedger(db_session)
    await ledger.add_credits(USER, 10, "purchase", "pack")
    for _ in range(2):
        await ledger.spend_credits(USER, 1, "generation", "meme")

    limit = await manager.check_generation_limit(USER)

    assert limit.allowed is True
    assert limit.remaining == 1
    assert (limit.reset_at.hour, limit.reset_at.minute) == (0, 0)
    assert limit.reset_at > utcnow()


@pytest.mark.asyncio
async def test_generation_limit_exhausted(db_session):
    manager = SubscriptionManager(db_session)
    ledger = CreditLedger(db_session)
    await ledger.add_credits(USER, 10, "purchase", "pack")
    for _ in range(3):
        await ledger.spend_credits(USER, 1, "generation", "meme")

    limit = await manager.check_generation_limit(USER)

    assert limit.allowed is False
    assert limit.remaining == 0


@pytest.mark.asyncio
async def test_generation_quota_exceeded_only_past_the_limit(db_session):
    manager = SubscriptionManager(db_session)
    ledger = CreditLedger(db_session)
    await ledger.add_credits(USER, 10, "purchase", "pack")
    for _ in range(3):
        await ledger.spend_credits(USER, 1, "generation", "meme")

    # Using the last slot is fine; going past it is not
    assert await manager.generation_quota_exceeded(USER) is False
    await ledger.spend_credits(USER, 1, "generation", "meme")
    assert await manager.generation_quota_exceeded(USER) is True

    await manager.create_subscription(USER, "pro")
    assert await manager.generation_quota_exceeded(USER) is False


@pytest.mark.asyncio
async def test_generation_limit_unlimited_for_pro(db_session):
    manager = SubscriptionManager(db_session)
    await manager.create_subscription(USER, "pro")

    limit = await manager.check_generation_limit(USER)

    assert limit.allowed is True
    assert limit.remaining is None
