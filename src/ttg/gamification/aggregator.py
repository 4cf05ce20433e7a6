"""Per-user progress aggregate derived from the ledger.

One logical writer per user: callers hold the user's lock from
``UserLockRegistry`` for the whole unit, read the row with
``SELECT ... FOR UPDATE``, and the ``version`` column catches anything that
slipped past both (another process, a bulk update from the sweep).
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ttg.db.models import ActivityCounter, UserProgress
from ttg.errors import ConcurrencyConflict
from ttg.gamification.criteria import category_stat
from ttg.gamification.multipliers import (
    EARLY_MORNING_BEFORE_HOUR,
    EARLY_WINDOW,
    LATE_NIGHT_FROM_HOUR,
    comparable_pair,
)
from ttg.gamification.progression import advance_tier, compute_level
from ttg.gamification.scoring import ScoringConfig
from ttg.schemas import ActionCompleted, ActionType

logger = logging.getLogger(__name__)

# Action types that count as finishing a task for the completion counters.
_COMPLETION_TYPES = frozenset({ActionType.TASK_COMPLETED.value, ActionType.FAMILY_TASK_COMPLETED.value})

# Progress fields exposed to achievement criteria next to the counters.
PROGRESS_STATS = ("current_streak", "longest_streak", "level", "total_points_earned", "current_points")


class UserLockRegistry:
    """One asyncio.Lock per user id. Different users never share a lock.

    Entries disappear once no coroutine holds or waits on the lock.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock


@dataclass(frozen=True)
class ProgressChange:
    amount: int
    old_level: int
    new_level: int
    old_tier: str
    new_tier: str

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level

    @property
    def tier_changed(self) -> bool:
        return self.new_tier != self.old_tier


async def get_progress(db: AsyncSession, user_id: int, *, for_update: bool = False) -> UserProgress | None:
    stmt = select(UserProgress).where(UserProgress.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_progress(db: AsyncSession, user_id: int, *, for_update: bool = True) -> UserProgress:
    """Get or create the progress row, locked for the current transaction."""
    progress = await get_progress(db, user_id, for_update=for_update)
    if progress is not None:
        return progress

    progress = UserProgress(
        user_id=user_id,
        current_points=0,
        total_points_earned=0,
        total_points_spent=0,
        level=1,
        next_level_threshold=compute_level(0).next_level_threshold,
        current_streak=0,
        longest_streak=0,
        last_activity_date=None,
        tier="bronze",
        unlock_pending=False,
        updated_at=datetime.now(timezone.utc),
    )
    db.add(progress)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise ConcurrencyConflict(user_id, "progress row created concurrently") from e
    return progress


def next_streak(current: int, last_activity: date | None, activity_day: date) -> tuple[int, date | None]:
    """Streak and last-activity date after activity on ``activity_day``.

    Next calendar day extends the streak, the same day leaves it alone, a
    gap starts over at 1. Activity dated before ``last_activity`` (a late
    event) changes nothing.
    """
    if last_activity is None:
        return 1, activity_day
    if activity_day == last_activity:
        return max(current, 1), last_activity
    if activity_day < last_activity:
        return current, last_activity
    if activity_day - last_activity == timedelta(days=1):
        return current + 1, activity_day
    return 1, activity_day


def record_activity_day(progress: UserProgress, activity_day: date) -> bool:
    """Run the streak rule for one day of activity. Returns True if it changed."""
    streak, last = next_streak(progress.current_streak, progress.last_activity_date, activity_day)
    changed = streak != progress.current_streak or last != progress.last_activity_date
    progress.current_streak = streak
    progress.last_activity_date = last
    progress.longest_streak = max(progress.longest_streak, streak)
    return changed


def apply_amount(progress: UserProgress, amount: int, config: ScoringConfig) -> ProgressChange:
    """Fold one ledger amount into the snapshot: balance, totals, level, tier."""
    old_level, old_tier = progress.level, progress.tier

    progress.current_points += amount
    if amount > 0:
        progress.total_points_earned += amount
    else:
        progress.total_points_spent += -amount

    info = compute_level(progress.total_points_earned)
    if info.level >= progress.level:
        progress.level = info.level
        progress.next_level_threshold = info.next_level_threshold
    progress.tier = advance_tier(progress.tier, progress.total_points_earned, dict(config.tier_thresholds))
    progress.updated_at = datetime.now(timezone.utc)

    return ProgressChange(amount, old_level, progress.level, old_tier, progress.tier)


async def flush_progress(db: AsyncSession, user_id: int) -> None:
    """Flush pending writes, turning a stale version into ConcurrencyConflict."""
    try:
        await db.flush()
    except StaleDataError as e:
        await db.rollback()
        raise ConcurrencyConflict(user_id, str(e)) from e


# ---------------------------------------------------------------------------
# Activity counters
# ---------------------------------------------------------------------------


def counter_deltas(action: ActionCompleted) -> dict[str, int]:
    """Counter increments produced by one action."""
    deltas: dict[str, int] = {action.action_type: 1}
    if action.category:
        deltas[category_stat(action.category)] = 1
    if action.is_collaborative:
        deltas["collaborative_actions"] = 1
    if action.action_type == ActionType.FOCUS_SESSION.value:
        deltas["focus_minutes"] = int(action.duration_minutes or 0)

    if action.action_type in _COMPLETION_TYPES:
        deltas["tasks_completed"] = 1
        if action.priority:
            deltas[f"priority:{action.priority.strip().lower()}"] = 1
        if action.due_date is not None:
            done, due = comparable_pair(action.completed_at, action.due_date)
            if done <= due:
                deltas["on_time_completions"] = 1
                if due - done >= EARLY_WINDOW:
                    deltas["early_completions"] = 1
            else:
                deltas["late_completions"] = 1
        if action.completed_at.hour < EARLY_MORNING_BEFORE_HOUR:
            deltas["morning_completions"] = 1
        elif action.completed_at.hour >= LATE_NIGHT_FROM_HOUR:
            deltas["night_completions"] = 1
        if action.completed_at.weekday() >= 5:
            deltas["weekend_completions"] = 1
    return deltas


async def bump_counters(db: AsyncSession, user_id: int, deltas: dict[str, int]) -> None:
    if not deltas:
        return
    result = await db.execute(
        select(ActivityCounter).where(
            ActivityCounter.user_id == user_id,
            ActivityCounter.stat.in_(list(deltas)),
        )
    )
    rows = {row.stat: row for row in result.scalars()}
    for stat, delta in deltas.items():
        row = rows.get(stat)
        if row is None:
            db.add(ActivityCounter(user_id=user_id, stat=stat, value=delta))
        else:
            row.value += delta


async def load_stats(db: AsyncSession, progress: UserProgress) -> dict[str, int]:
    """Everything criteria can read: counters plus the progress fields."""
    result = await db.execute(
        select(ActivityCounter.stat, ActivityCounter.value).where(ActivityCounter.user_id == progress.user_id)
    )
    stats = {stat: int(value) for stat, value in result}
    for name in PROGRESS_STATS:
        stats[name] = int(getattr(progress, name))
    return stats


async def expire_streaks(db: AsyncSession, today: date) -> int:
    """Zero streaks whose last activity is older than yesterday.

    Bumps ``version`` so a unit that read the row earlier fails its flush
    and retries against the fresh value.
    """
    cutoff = today - timedelta(days=1)
    result = await db.execute(
        update(UserProgress)
        .where(UserProgress.last_activity_date < cutoff, UserProgress.current_streak > 0)
        .values(
            current_streak=0,
            version=UserProgress.version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    expired = result.rowcount or 0
    if expired:
        logger.info("Expired %d stale streaks (cutoff=%s)", expired, cutoff)
    return expired
