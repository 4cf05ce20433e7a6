"""Append-only points ledger.

Rows are never updated or deleted; corrections go in as offsetting
entries. The ``idempotency_key`` column is UNIQUE, so a replayed event
cannot land twice even if two writers race past the pre-check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import PointTransaction
from ttg.errors import DuplicateEventError, StorageError, ValidationError
from ttg.schemas import TransactionType

logger = logging.getLogger(__name__)

_SIGN_RULES: dict[str, int] = {
    TransactionType.EARN.value: 1,
    TransactionType.BONUS.value: 1,
    TransactionType.CHALLENGE_REWARD.value: 1,
    TransactionType.SPEND.value: -1,
}


@dataclass(frozen=True)
class LedgerTotals:
    balance: int
    earned: int
    spent: int


async def find_by_key(db: AsyncSession, idempotency_key: str) -> PointTransaction | None:
    """Fetch the entry recorded under an idempotency key, if any."""
    result = await db.execute(
        select(PointTransaction).where(PointTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def append(
    db: AsyncSession,
    *,
    user_id: int,
    amount: int,
    transaction_type: str,
    idempotency_key: str,
    reason: str = "",
    source_type: str | None = None,
    source_id: str | None = None,
    occurred_at: datetime | None = None,
) -> PointTransaction:
    """Append one signed entry and return it (``.id`` is populated).

    Raises DuplicateEventError when the key is already recorded and
    StorageError when the write itself fails. Spends must be negative,
    every other type positive; zero is never written.
    """
    sign = _SIGN_RULES.get(transaction_type)
    if sign is None:
        raise ValidationError(f"Unknown transaction type {transaction_type!r}")
    if amount == 0 or (amount > 0) != (sign > 0):
        raise ValidationError(f"Amount {amount} does not match transaction type {transaction_type}")

    existing = await find_by_key(db, idempotency_key)
    if existing is not None:
        raise DuplicateEventError(idempotency_key, existing)

    now = datetime.now(timezone.utc)
    entry = PointTransaction(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        reason=reason[:256],
        source_type=source_type,
        source_id=source_id,
        idempotency_key=idempotency_key,
        occurred_at=occurred_at or now,
        created_at=now,
    )
    db.add(entry)

    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateEventError(idempotency_key) from e  # lost the race to another writer
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Ledger append failed for user %d (key=%s)", user_id, idempotency_key)
        raise StorageError(f"Ledger append failed: {e}") from e

    return entry


async def sum_for(db: AsyncSession, user_id: int) -> int:
    """Sum of every amount for a user. Reconciliation only."""
    result = await db.execute(
        select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(PointTransaction.user_id == user_id)
    )
    return int(result.scalar_one())


async def totals_for(db: AsyncSession, user_id: int) -> LedgerTotals:
    """Balance, lifetime earned and lifetime spent, straight from the log."""
    earned_expr = func.coalesce(
        func.sum(case((PointTransaction.amount > 0, PointTransaction.amount), else_=0)), 0
    )
    spent_expr = func.coalesce(
        func.sum(case((PointTransaction.amount < 0, -PointTransaction.amount), else_=0)), 0
    )
    result = await db.execute(
        select(earned_expr, spent_expr).where(PointTransaction.user_id == user_id)
    )
    earned, spent = result.one()
    return LedgerTotals(balance=int(earned) - int(spent), earned=int(earned), spent=int(spent))


async def history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[PointTransaction], int]:
    """Page through a user's entries, newest first."""
    page = max(page, 1)
    per_page = min(max(per_page, 1), 200)

    total = (
        await db.execute(
            select(func.count()).select_from(PointTransaction).where(PointTransaction.user_id == user_id)
        )
    ).scalar_one()

    result = await db.execute(
        select(PointTransaction)
        .where(PointTransaction.user_id == user_id)
        .order_by(PointTransaction.occurred_at.desc(), PointTransaction.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars()), int(total)
