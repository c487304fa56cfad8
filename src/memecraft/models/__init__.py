"""ORM models package -- re-exports all models and the Base class."""

from memecraft.models.base import Base
from memecraft.models.billing import (
    CreditBalance,
    CreditTransaction,
    Subscription,
)
from memecraft.models.payment import Payment, PromoCode

__all__ = [
    "Base",
    "CreditBalance",
    "CreditTransaction",
    "Subscription",
    "Payment",
    "PromoCode",
]
