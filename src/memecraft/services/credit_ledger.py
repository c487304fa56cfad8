"""Credit ledger -- balances, atomic spends, the transaction log and pricing."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.errors import InsufficientCredits, InvalidAmount, ValidationFailed
from memecraft.models import CreditBalance, CreditTransaction
from memecraft.models.base import upsert_insert, utcnow
from memecraft.services.audit_logger import AuditLogger

log = structlog.get_logger()

TRANSACTION_TYPES = ("purchase", "generation", "referral", "bonus", "refund")

# Pack size (credits) -> price in major currency units
CREDIT_PACK_PRICES: dict[int, int] = {
    10: 99,
    50: 399,
    200: 999,
    1000: 3999,
}

# Undiscounted price of a single credit, used to express pack bonuses
BASE_CREDIT_PRICE = 9.9

ACTION_COSTS = {
    "text_generation": 1,
    "image_generation": 2,
    "meme_generation": 3,
    "hd_upgrade": 1,
    "ultra_hd_upgrade": 2,
    "watermark_removal": 5,
    "priority_generation": 2,
}

REFERRER_BONUS = 50
REFEREE_BONUS = 5


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreditPack:
    amount: int
    price: int
    bonus: int


def get_meme_generation_cost(
    with_text: bool,
    with_image: bool,
    hd: bool = False,
    ultra_hd: bool = False,
    priority: bool = False,
) -> int:
    """Price a generation request in credits.

    Ultra HD supersedes HD; the two upgrades never stack.
    """
    if with_text and with_image:
        cost = ACTION_COSTS["meme_generation"]
    elif with_image:
        cost = ACTION_COSTS["image_generation"]
    elif with_text:
        cost = ACTION_COSTS["text_generation"]
    else:
        cost = 0

    if ultra_hd:
        cost += ACTION_COSTS["ultra_hd_upgrade"]
    elif hd:
        cost += ACTION_COSTS["hd_upgrade"]

    if priority:
        cost += ACTION_COSTS["priority_generation"]

    return cost


def get_credit_pack_price(amount: int) -> int | None:
    """Return the price of a credit pack, or None if *amount* is not a pack size."""
    return CREDIT_PACK_PRICES.get(amount)


def get_available_credit_packs() -> list[CreditPack]:
    """List purchasable packs with the credits saved versus the base rate."""
    packs = []
    for amount, price in CREDIT_PACK_PRICES.items():
        base_price = BASE_CREDIT_PRICE * amount
        bonus = math.floor((base_price - price) / (price / amount) + 0.5)
        packs.append(CreditPack(amount=amount, price=price, bonus=bonus))
    return packs


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class CreditLedger:
    """All balance changes go through this class.

    Mutations run on the caller's session and become durable when the
    caller's transaction commits. Spends use a single conditional UPDATE so
    that concurrent spenders for the same user are serialised by the store.
    """

    def __init__(self, db: AsyncSession, audit: AuditLogger | None = None) -> None:
        self._db = db
        self._audit = audit or AuditLogger()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, user_id: str) -> CreditBalance:
        """Return the user's balance row, creating an empty one on first access."""
        await self._ensure_balance_row(user_id)
        return await self._load(user_id)

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        return await self._current_balance(user_id) >= amount

    async def get_transaction_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreditTransaction]:
        """Return the user's transactions, newest first."""
        result = await self._db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_transactions_since(
        self,
        user_id: str,
        txn_type: str,
        since: datetime,
    ) -> int:
        result = await self._db.execute(
            select(func.count())
            .select_from(CreditTransaction)
            .where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.txn_type == txn_type,
                CreditTransaction.created_at >= since,
            )
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        txn_type: str,
        description: str,
    ) -> CreditBalance:
        """Credit *amount* to the balance and lifetime total and log the transaction."""
        _check_amount(amount)
        _check_type(txn_type)

        await self._ensure_balance_row(user_id)
        result = await self._db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(
                balance=CreditBalance.balance + amount,
                lifetime=CreditBalance.lifetime + amount,
                updated_at=utcnow(),
            )
            .returning(CreditBalance.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance: int = result.scalar_one()

        await self._append_transaction(user_id, amount, txn_type, description, new_balance)
        return await self._load(user_id)

    async def spend_credits(
        self,
        user_id: str,
        amount: int,
        txn_type: str,
        description: str,
    ) -> CreditBalance:
        """Debit *amount* if the balance covers it; otherwise change nothing.

        Raises InsufficientCredits carrying the current balance as ``remaining``.
        """
        _check_amount(amount)
        _check_type(txn_type)

        result = await self._db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id, CreditBalance.balance >= amount)
            .values(balance=CreditBalance.balance - amount, updated_at=utcnow())
            .returning(CreditBalance.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            available = await self._current_balance(user_id)
            log.info(
                "credit_spend_rejected",
                user_id=user_id,
                required=amount,
                available=available,
            )
            raise InsufficientCredits(
                f"Insufficient credits. Required: {amount}, available: {available}",
                remaining=available,
                required=amount,
            )

        await self._append_transaction(user_id, -amount, txn_type, description, new_balance)
        return await self._load(user_id)

    async def refund_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        transaction_id: int | str | None = None,
    ) -> CreditBalance:
        """Return credits to a user. Delegates to add_credits with txn_type='refund'."""
        if transaction_id is not None:
            description = f"Refund for transaction {transaction_id}: {description}"
        return await self.add_credits(user_id, amount, "refund", description)

    async def award_referral_bonus(self, referrer_id: str, referee_id: str) -> None:
        """Credit both sides of a referral within the caller's transaction."""
        if referrer_id == referee_id:
            raise ValidationFailed("A user cannot refer themselves")
        await self.add_credits(
            referrer_id, REFERRER_BONUS, "referral", "Bonus for an invited friend",
        )
        await self.add_credits(
            referee_id, REFEREE_BONUS, "bonus", "Welcome bonus",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_balance_row(self, user_id: str) -> None:
        insert_stmt = upsert_insert(self._db)
        await self._db.execute(
            insert_stmt(CreditBalance)
            .values(user_id=user_id, balance=0, lifetime=0, updated_at=utcnow())
            .on_conflict_do_nothing(index_elements=["user_id"])
        )

    async def _load(self, user_id: str) -> CreditBalance:
        result = await self._db.execute(
            select(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _current_balance(self, user_id: str) -> int:
        result = await self._db.execute(
            select(CreditBalance.balance).where(CreditBalance.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return balance or 0

    async def _append_transaction(
        self,
        user_id: str,
        amount: int,
        txn_type: str,
        description: str,
        balance_after: int,
    ) -> None:
        await self._db.execute(
            insert(CreditTransaction).values(
                user_id=user_id,
                amount=amount,
                txn_type=txn_type,
                description=description,
                balance_after=balance_after,
                created_at=utcnow(),
            )
        )
        self._audit.log_credit_event(user_id, amount, txn_type, balance_after)


def _check_amount(amount: int) -> None:
    if amount <= 0:
        raise InvalidAmount("Amount must be positive", amount=amount)


def _check_type(txn_type: str) -> None:
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationFailed(f"Unknown transaction type: {txn_type}")
