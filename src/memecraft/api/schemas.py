"""Response shapes shared by several routers (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from memecraft.models import CreditTransaction, Subscription
from memecraft.models.base import as_utc


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionInfo(CamelModel):
    plan: str
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def from_model(cls, subscription: Subscription) -> SubscriptionInfo:
        return cls(
            plan=subscription.plan,
            status=subscription.status,
            current_period_end=as_utc(subscription.current_period_end),
            cancel_at_period_end=subscription.cancel_at_period_end,
        )


class TransactionInfo(CamelModel):
    id: int
    amount: int
    type: str
    description: str
    balance_after: int
    created_at: datetime

    @classmethod
    def from_model(cls, txn: CreditTransaction) -> TransactionInfo:
        return cls(
            id=txn.id,
            amount=txn.amount,
            type=txn.txn_type,
            description=txn.description,
            balance_after=txn.balance_after,
            created_at=as_utc(txn.created_at),
        )
