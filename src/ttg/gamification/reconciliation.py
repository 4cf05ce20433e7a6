"""Ledger-to-aggregate reconciliation and the periodic sweep.

``reconcile_user`` recomputes balance and lifetime totals from the ledger
and overwrites the snapshot when they disagree. ``sweep`` walks users with
unfinished unlock work plus every progress row in batches, one user at a
time under that user's lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import UserProgress
from ttg.gamification import ledger
from ttg.gamification.aggregator import expire_streaks, flush_progress, get_or_create_progress
from ttg.gamification.catalog import Catalog
from ttg.gamification.challenge_tracker import missing_reward_badges
from ttg.gamification.progression import advance_tier, compute_level
from ttg.gamification.scoring import ScoringConfig

if TYPE_CHECKING:
    from ttg.gamification.engine import GamificationEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileReport:
    user_id: int
    balance_drift: int = 0
    earned_drift: int = 0
    spent_drift: int = 0
    unlock_pending: bool = False
    missing_reward_badges: tuple[int, ...] = ()

    @property
    def corrected(self) -> bool:
        return bool(self.balance_drift or self.earned_drift or self.spent_drift)


@dataclass
class SweepResult:
    users_checked: int = 0
    drift_corrected: int = 0
    unlocks_settled: int = 0
    streaks_expired: int = 0
    failures: list[int] = field(default_factory=list)


async def reconcile_user(
    db: AsyncSession,
    user_id: int,
    config: ScoringConfig,
    catalog: Catalog | None = None,
) -> ReconcileReport:
    """Bring one user's snapshot back in line with the ledger and commit."""
    totals = await ledger.totals_for(db, user_id)
    progress = await get_or_create_progress(db, user_id)

    balance_drift = progress.current_points - totals.balance
    earned_drift = progress.total_points_earned - totals.earned
    spent_drift = progress.total_points_spent - totals.spent

    if balance_drift or earned_drift or spent_drift:
        logger.warning(
            "Drift for user %d: balance %+d, earned %+d, spent %+d; correcting from ledger",
            user_id, balance_drift, earned_drift, spent_drift,
        )
        progress.current_points = totals.balance
        progress.total_points_earned = totals.earned
        progress.total_points_spent = totals.spent
        info = compute_level(totals.earned)
        progress.level = info.level
        progress.next_level_threshold = info.next_level_threshold
        progress.tier = advance_tier(progress.tier, totals.earned, dict(config.tier_thresholds))
        progress.updated_at = datetime.now(timezone.utc)

    missing = await missing_reward_badges(db, catalog, user_id) if catalog is not None else []
    report = ReconcileReport(
        user_id=user_id,
        balance_drift=balance_drift,
        earned_drift=earned_drift,
        spent_drift=spent_drift,
        unlock_pending=progress.unlock_pending,
        missing_reward_badges=tuple(missing),
    )
    await flush_progress(db, user_id)
    await db.commit()
    return report


async def _user_batches(db: AsyncSession, batch_size: int, *, pending_only: bool) -> list[list[int]]:
    stmt = select(UserProgress.user_id).order_by(UserProgress.user_id)
    if pending_only:
        stmt = stmt.where(UserProgress.unlock_pending.is_(True))
    user_ids = list((await db.execute(stmt)).scalars())
    return [user_ids[i:i + batch_size] for i in range(0, len(user_ids), batch_size)]


async def sweep(engine: GamificationEngine, today: date | None = None) -> SweepResult:
    """Expire stale streaks, then reconcile every user, pending ones first."""
    today = today or datetime.now(timezone.utc).date()
    batch_size = max(1, engine.settings.reconcile_batch_size)
    result = SweepResult()

    async with engine.session_factory() as db:
        result.streaks_expired = await expire_streaks(db, today)
        pending = await _user_batches(db, batch_size, pending_only=True)
        everyone = await _user_batches(db, batch_size, pending_only=False)

    seen: set[int] = set()
    for batch in pending + everyone:
        for user_id in batch:
            if user_id in seen:
                continue
            seen.add(user_id)
            try:
                report = await engine.reconcile_user(user_id)
            except Exception:
                logger.exception("Reconciliation failed for user %d", user_id)
                result.failures.append(user_id)
                continue
            result.users_checked += 1
            if report.corrected:
                result.drift_corrected += 1
            if report.unlock_pending or report.missing_reward_badges:
                result.unlocks_settled += 1

    logger.info(
        "Sweep done: %d users, %d corrected, %d settled, %d streaks expired, %d failures",
        result.users_checked, result.drift_corrected, result.unlocks_settled,
        result.streaks_expired, len(result.failures),
    )
    return result
