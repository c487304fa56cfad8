"""Credit pack, history and charge endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.api.dependencies import (
    get_credit_ledger,
    get_current_principal,
    get_monetization_gate,
    get_subscription_manager,
    require_user,
)
from memecraft.api.schemas import CamelModel, TransactionInfo
from memecraft.database import get_db
from memecraft.errors import SubscriptionRequired, ValidationFailed
from memecraft.services.credit_ledger import (
    CreditLedger,
    get_available_credit_packs,
    get_meme_generation_cost,
)
from memecraft.services.monetization_gate import MonetizationGate, MonetizationLimit
from memecraft.services.subscription_manager import PLAN_ORDER, SubscriptionManager

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class CreditPackResponse(CamelModel):
    amount: int
    price: int
    bonus: int


class TransactionsResponse(CamelModel):
    transactions: list[TransactionInfo]
    limit: int
    offset: int


class ChargeRequest(CamelModel):
    with_text: bool = True
    with_image: bool = False
    hd: bool = False
    ultra_hd: bool = False
    priority: bool = False


class ChargeResponse(CamelModel):
    charged: int
    balance: int
    remaining_today: Optional[int]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/packs", response_model=list[CreditPackResponse])
async def list_packs():
    """Return the purchasable credit packs."""
    return [
        CreditPackResponse(amount=p.amount, price=p.price, bonus=p.bonus)
        for p in get_available_credit_packs()
    ]


@router.get("/transactions", response_model=TransactionsResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(require_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Return the caller's ledger entries, newest first."""
    transactions = await ledger.get_transaction_history(user_id, limit=limit, offset=offset)
    return TransactionsResponse(
        transactions=[TransactionInfo.from_model(t) for t in transactions],
        limit=limit,
        offset=offset,
    )


@router.post("/charge", response_model=ChargeResponse)
async def charge_generation(
    body: ChargeRequest,
    principal: Optional[str] = Depends(get_current_principal),
    gate: MonetizationGate = Depends(get_monetization_gate),
    ledger: CreditLedger = Depends(get_credit_ledger),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
):
    """Pay for one generation: gate check, daily quota, then the debit."""
    cost = get_meme_generation_cost(
        body.with_text, body.with_image, hd=body.hd, ultra_hd=body.ultra_hd, priority=body.priority,
    )
    if cost == 0:
        raise ValidationFailed("Nothing to generate")

    denial = await gate.check(principal, MonetizationLimit("generation", cost))
    if denial is not None:
        raise denial.to_error()

    quota = await subscriptions.check_generation_limit(principal)
    if not quota.allowed:
        raise await _daily_limit_reached(subscriptions, principal, quota.reset_at)

    balance = await ledger.spend_credits(
        principal, cost, "generation", f"Meme generation ({cost} credits)",
    )
    # A concurrent charge may have used the last slot since the check above
    if await subscriptions.generation_quota_exceeded(principal):
        error = await _daily_limit_reached(subscriptions, principal, quota.reset_at)
        await db.rollback()
        raise error
    await db.commit()

    remaining = quota.remaining - 1 if quota.remaining is not None else None
    return ChargeResponse(charged=cost, balance=balance.balance, remaining_today=remaining)


async def _daily_limit_reached(
    subscriptions: SubscriptionManager, user_id: str, reset_at: datetime,
) -> SubscriptionRequired:
    subscription = await subscriptions.get_subscription(user_id)
    return SubscriptionRequired(
        "Daily generation limit reached",
        upgradeRequired=_next_plan(subscription.plan),
        resetAt=reset_at.isoformat(),
    )


def _next_plan(plan: str) -> str | None:
    rank = PLAN_ORDER[plan] + 1
    for name, order in PLAN_ORDER.items():
        if order == rank:
            return name
    return None
