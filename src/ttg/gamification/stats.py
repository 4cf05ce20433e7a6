"""Per-user gamification summary with consistency metrics."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import PointTransaction, UserAchievement, UserBadge
from ttg.gamification.aggregator import get_progress
from ttg.gamification.multipliers import monthly_consistency_multiplier, weekly_consistency_multiplier
from ttg.gamification.progression import compute_level
from ttg.schemas import GamificationStats, TransactionType


def _utc_date(dt: datetime) -> date:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date()


async def active_days(db: AsyncSession, user_id: int, today: date, days: int) -> set[date]:
    """Distinct UTC dates with an earning action in the ``days`` ending today."""
    since = datetime.combine(today - timedelta(days=days - 1), datetime.min.time(), tzinfo=timezone.utc)
    result = await db.execute(
        select(PointTransaction.occurred_at).where(
            PointTransaction.user_id == user_id,
            PointTransaction.transaction_type == TransactionType.EARN.value,
            PointTransaction.occurred_at >= since,
        )
    )
    first = today - timedelta(days=days - 1)
    return {d for d in (_utc_date(ts) for ts in result.scalars()) if first <= d <= today}


async def _count(db: AsyncSession, column, user_id_column, user_id: int) -> int:  # noqa: ANN001
    result = await db.execute(select(func.count(column)).where(user_id_column == user_id))
    return int(result.scalar_one())


async def gamification_stats(db: AsyncSession, user_id: int, now: datetime | None = None) -> GamificationStats:
    now = now or datetime.now(timezone.utc)
    today = _utc_date(now)
    progress = await get_progress(db, user_id)

    last_30 = await active_days(db, user_id, today, 30)
    week_start = today - timedelta(days=6)
    last_7 = {d for d in last_30 if d >= week_start}

    weekly_ratio = len(last_7) / 7
    monthly_ratio = len(last_30) / 30

    if progress is None:
        level_info = compute_level(0)
        current = earned = spent = streak = longest = 0
        level, threshold, tier = level_info.level, level_info.next_level_threshold, "bronze"
    else:
        current, earned, spent = progress.current_points, progress.total_points_earned, progress.total_points_spent
        streak, longest = progress.current_streak, progress.longest_streak
        level, threshold, tier = progress.level, progress.next_level_threshold, progress.tier

    return GamificationStats(
        user_id=user_id,
        current_points=current,
        total_points_earned=earned,
        total_points_spent=spent,
        level=level,
        next_level_threshold=threshold,
        tier=tier,
        current_streak=streak,
        longest_streak=longest,
        achievements_unlocked=await _count(db, UserAchievement.id, UserAchievement.user_id, user_id),
        badges_earned=await _count(db, UserBadge.id, UserBadge.user_id, user_id),
        active_days_7=len(last_7),
        active_days_30=len(last_30),
        consistency_score=round(monthly_ratio * 100, 1),
        weekly_consistency_multiplier=weekly_consistency_multiplier(weekly_ratio),
        monthly_consistency_multiplier=monthly_consistency_multiplier(monthly_ratio),
    )
