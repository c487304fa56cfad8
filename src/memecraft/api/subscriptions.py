"""Subscription API endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.api.dependencies import get_subscription_manager, require_user
from memecraft.api.schemas import CamelModel, SubscriptionInfo
from memecraft.database import get_db
from memecraft.services.subscription_manager import SubscriptionManager, get_plan_limits

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class PlanLimitsInfo(CamelModel):
    ai_generations_per_day: Optional[int]
    saved_memes: Optional[int]
    max_resolution: int
    watermark: bool
    priority: str


class SubscriptionResponse(CamelModel):
    subscription: SubscriptionInfo
    limits: PlanLimitsInfo


class CancelRequest(CamelModel):
    immediate: bool = False


class CancelResponse(CamelModel):
    message: str
    subscription: SubscriptionInfo


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("", response_model=SubscriptionResponse)
async def read_subscription(
    user_id: str = Depends(require_user),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
):
    """Return the caller's subscription and the limits of its plan.

    Unlimited quotas are reported as null.
    """
    subscription = await subscriptions.get_subscription(user_id)
    limits = get_plan_limits(subscription.plan)
    return SubscriptionResponse(
        subscription=SubscriptionInfo.from_model(subscription),
        limits=PlanLimitsInfo(
            ai_generations_per_day=limits.ai_generations_per_day,
            saved_memes=limits.saved_memes,
            max_resolution=limits.max_resolution,
            watermark=limits.watermark,
            priority=limits.priority,
        ),
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    body: Optional[CancelRequest] = None,
    user_id: str = Depends(require_user),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
):
    immediate = body.immediate if body is not None else False
    subscription = await subscriptions.cancel_subscription(user_id, immediate=immediate)
    await db.commit()
    if immediate:
        message = "Subscription cancelled"
    else:
        message = "Subscription will be cancelled at the end of the current period"
    return CancelResponse(
        message=message,
        subscription=SubscriptionInfo.from_model(subscription),
    )
