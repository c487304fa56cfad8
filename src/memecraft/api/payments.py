"""Payment API endpoints: balance, payment creation, webhooks and polling."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.api.dependencies import (
    get_credit_ledger,
    get_payment_service,
    get_subscription_manager,
    require_user,
)
from memecraft.api.schemas import CamelModel, SubscriptionInfo, TransactionInfo
from memecraft.database import get_db
from memecraft.errors import InvalidSignature
from memecraft.services.credit_ledger import CreditLedger
from memecraft.services.payment_service import PaymentOrder, PaymentService
from memecraft.services.subscription_manager import SubscriptionManager

log = structlog.get_logger()

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

RECENT_TRANSACTIONS = 10


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class BalanceInfo(CamelModel):
    current: int
    lifetime: int


class LimitInfo(CamelModel):
    remaining: Optional[int]
    reset_at: datetime


class BalanceResponse(CamelModel):
    balance: BalanceInfo
    subscription: SubscriptionInfo
    limits: LimitInfo
    recent_transactions: list[TransactionInfo]


class CreatePaymentBody(CamelModel):
    type: Literal["credits", "subscription"]
    amount: Optional[int] = Field(None, gt=0)
    plan: Optional[Literal["premium", "pro"]] = None
    provider: Optional[str] = Field(None, max_length=30)
    promo_code: Optional[str] = Field(None, max_length=50)


class CreatePaymentResponse(CamelModel):
    id: str
    payment_id: str
    confirmation_url: Optional[str] = None
    confirmation_data: Optional[dict[str, Any]] = None
    amount: int
    currency: str


class SyncResponse(CamelModel):
    id: str
    status: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/balance", response_model=BalanceResponse)
async def read_balance(
    user_id: str = Depends(require_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
):
    """Balance, subscription, today's generation allowance and recent history."""
    balance = await ledger.get_balance(user_id)
    subscription = await subscriptions.get_subscription(user_id)
    limit = await subscriptions.check_generation_limit(user_id)
    transactions = await ledger.get_transaction_history(user_id, limit=RECENT_TRANSACTIONS)

    return BalanceResponse(
        balance=BalanceInfo(current=balance.balance, lifetime=balance.lifetime),
        subscription=SubscriptionInfo.from_model(subscription),
        limits=LimitInfo(remaining=limit.remaining, reset_at=limit.reset_at),
        recent_transactions=[TransactionInfo.from_model(t) for t in transactions],
    )


@router.post("", response_model=CreatePaymentResponse)
async def create_payment(
    body: CreatePaymentBody,
    user_id: str = Depends(require_user),
    payments: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db),
):
    """Start a credit pack or subscription purchase."""
    created = await payments.create_payment(user_id, PaymentOrder(
        type=body.type,
        amount=body.amount,
        plan=body.plan,
        provider=body.provider,
        promo_code=body.promo_code,
    ))
    # The row must be durable before the caller is sent to the provider
    await db.commit()
    return CreatePaymentResponse(
        id=created.id,
        payment_id=created.payment_id,
        confirmation_url=created.confirmation_url,
        confirmation_data=created.confirmation_data,
        amount=created.amount,
        currency=created.currency,
    )


@router.post("/webhook/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    """Receive a callback from a named provider."""
    return await _handle_webhook(request, db, payments, provider)


@router.post("/webhook")
async def webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    """Receive a callback and infer the provider from the payload (best-effort)."""
    return await _handle_webhook(request, db, payments, None)


@router.post("/{payment_id}/sync", response_model=SyncResponse)
async def sync_payment(
    payment_id: str,
    user_id: str = Depends(require_user),
    payments: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db),
):
    """Ask the provider for the current status of one of the caller's payments."""
    payment = await payments.sync_payment_status(payment_id, user_id=user_id)
    await db.commit()
    return SyncResponse(id=payment.id, status=payment.status)


async def _handle_webhook(
    request: Request,
    db: AsyncSession,
    payments: PaymentService,
    provider: str | None,
):
    """Commit before acknowledging. Any failure rolls back and answers 500 so
    the provider redelivers.
    """
    raw_body = await request.body()
    signature = (
        request.headers.get("stripe-signature")
        or request.headers.get("x-webhook-signature", "")
    )
    try:
        outcome = await payments.process_webhook(raw_body, signature, provider_name=provider)
        await db.commit()
    except InvalidSignature as exc:
        await db.rollback()
        log.warning("webhook_rejected", provider=exc.provider, detail=exc.detail)
        return JSONResponse(status_code=400, content=exc.to_body())
    except Exception:
        await db.rollback()
        log.exception("webhook_processing_failed", provider=provider)
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    log.info(
        "webhook_processed",
        payment_id=outcome.payment_id,
        status=outcome.status,
        applied=outcome.applied,
    )
    return {"received": True}
