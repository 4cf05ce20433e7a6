"""Redeemed-reward inventory.

A redemption writes a ``spend`` ledger entry and, in the same transaction,
a ``user_rewards`` row the user later spends with ``use_reward``. Reward
definitions belong to the task tracker; they reach this module as
``RewardOffer`` values.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import PointTransaction, UserReward
from ttg.errors import ValidationError
from ttg.schemas import RedeemedReward, RewardOffer, RewardRedemption

logger = logging.getLogger(__name__)


def record_redemption(
    db: AsyncSession,
    redemption: RewardRedemption,
    entry: PointTransaction,
    label: str,
) -> UserReward:
    """Stage the inventory row for a spend entry. The caller commits."""
    row = UserReward(
        user_id=redemption.user_id,
        reward_id=redemption.reward_id,
        reward_name=label,
        point_cost=redemption.point_cost,
        transaction_id=entry.id,
        redeemed_at=datetime.now(timezone.utc),
        is_used=False,
        used_at=None,
    )
    db.add(row)
    return row


async def use_reward(
    db: AsyncSession, user_id: int, user_reward_id: int, now: datetime | None = None
) -> RedeemedReward:
    """Spend a held reward. Raises ValidationError if unknown, foreign or already used."""
    now = now or datetime.now(timezone.utc)
    row = await db.get(UserReward, user_reward_id)
    if row is None or row.user_id != user_id:
        raise ValidationError(f"User {user_id} holds no reward {user_reward_id}")

    # Conditional UPDATE so two concurrent uses cannot both succeed.
    result = await db.execute(
        update(UserReward)
        .where(UserReward.id == user_reward_id, UserReward.is_used.is_(False))
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise ValidationError(f"Reward {user_reward_id} was already used")
    await db.commit()
    await db.refresh(row)

    logger.info("User %d used reward %d (%s)", user_id, row.reward_id, row.reward_name)
    return RedeemedReward.model_validate(row)


async def inventory(db: AsyncSession, user_id: int, include_used: bool = False) -> list[RedeemedReward]:
    """Rewards the user redeemed, newest first."""
    stmt = select(UserReward).where(UserReward.user_id == user_id)
    if not include_used:
        stmt = stmt.where(UserReward.is_used.is_(False))
    result = await db.execute(stmt.order_by(UserReward.redeemed_at.desc(), UserReward.id.desc()))
    return [RedeemedReward.model_validate(row) for row in result.scalars()]


def available_rewards(level: int, offers: Iterable[RewardOffer]) -> list[RewardOffer]:
    """Active offers the user's level unlocks, cheapest first."""
    return sorted(
        (offer for offer in offers if offer.is_active and offer.minimum_level <= level),
        key=lambda offer: (offer.point_cost, offer.reward_id),
    )
