"""Achievement and badge unlock evaluation.

Runs after the triggering action has been committed. Each unlock (row plus
its bonus ledger entry) commits on its own, so a failure part way through
keeps the unlocks already made and leaves the rest to the next pass.
The UNIQUE constraints on ``user_achievements`` / ``user_badges`` are the
backstop against a second writer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import PointTransaction, UserAchievement, UserBadge, UserProgress
from ttg.errors import CriteriaEvaluationError, DuplicateEventError
from ttg.gamification import events, ledger
from ttg.gamification.aggregator import apply_amount, flush_progress, load_stats
from ttg.gamification.catalog import BadgeDefinition, Catalog, UnlockDefinition
from ttg.gamification.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, descriptor_for_unlock, score
from ttg.schemas import AchievementUnlocked, PointsAwarded, TransactionType

logger = logging.getLogger(__name__)

UnlockRow = Union[UserAchievement, UserBadge]


@dataclass(frozen=True)
class Unlocked:
    definition: UnlockDefinition
    bonus_awarded: int
    unlocked_at: datetime


@dataclass(frozen=True)
class AlreadyUnlocked:
    definition: UnlockDefinition


@dataclass(frozen=True)
class Conflict:
    """Another writer inserted the same unlock first."""

    definition: UnlockDefinition
    existing: UnlockRow | None


UnlockResult = Union[Unlocked, AlreadyUnlocked, Conflict]


def unlock_key(definition: UnlockDefinition, user_id: int) -> str:
    return f"{definition.kind}:{definition.id}:{user_id}"


def to_event(user_id: int, result: Unlocked) -> AchievementUnlocked:
    return AchievementUnlocked(
        user_id=user_id,
        achievement_id=result.definition.id,
        bonus_awarded=result.bonus_awarded,
        kind=result.definition.kind,
        name=result.definition.name,
    )


class UnlockEvaluator:
    """Evaluates catalog criteria against a user's stats and awards unlocks."""

    def __init__(
        self,
        catalog: Catalog,
        config: ScoringConfig = DEFAULT_SCORING_CONFIG,
        redis: object = None,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self.redis = redis
        self.criteria_errors: dict[tuple[str, int], CriteriaEvaluationError] = {}

    async def _owned(self, db: AsyncSession, user_id: int) -> tuple[set[int], set[int]]:
        ach = await db.execute(select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id))
        bdg = await db.execute(select(UserBadge.badge_id).where(UserBadge.user_id == user_id))
        return set(ach.scalars()), set(bdg.scalars())

    def _satisfied(self, definition: UnlockDefinition, stats: dict[str, int]) -> bool:
        try:
            return definition.predicate.evaluate(stats)
        except CriteriaEvaluationError as e:
            key = (definition.kind, definition.id)
            if key not in self.criteria_errors:
                logger.error("Skipping %s %d: %s", definition.kind, definition.id, e.reason)
            self.criteria_errors[key] = e
            return False

    async def evaluate(self, db: AsyncSession, progress: UserProgress) -> list[UnlockResult]:
        """Award every definition whose criteria now hold and the user lacks.

        ``progress`` must be the locked, post-update snapshot.
        """
        stats = await load_stats(db, progress)
        owned_achievements, owned_badges = await self._owned(db, progress.user_id)

        results: list[UnlockResult] = []
        for definition in self.catalog.unlockables():
            if not definition.awarded_by_criteria:
                continue
            owned = owned_badges if isinstance(definition, BadgeDefinition) else owned_achievements
            if definition.id in owned:
                continue
            if not self._satisfied(definition, stats):
                continue
            results.append(await self.award(db, progress, definition))
        return results

    async def award_badge(self, db: AsyncSession, progress: UserProgress, badge_id: int) -> UnlockResult | None:
        """Badge path used by challenge rewards. Criteria are not consulted."""
        badge = self.catalog.badges.get(badge_id)
        if badge is None:
            logger.warning("Badge not found: %d", badge_id)
            return None
        return await self.award(db, progress, badge)

    async def award(self, db: AsyncSession, progress: UserProgress, definition: UnlockDefinition) -> UnlockResult:
        """Insert one unlock row, append its bonus and commit."""
        user_id = progress.user_id
        existing = await _find_unlock(db, definition, user_id)
        if existing is not None:
            return AlreadyUnlocked(definition)

        now = datetime.now(timezone.utc)
        db.add(_new_unlock(definition, user_id, now))
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            await db.refresh(progress)
            return Conflict(definition, await _find_unlock(db, definition, user_id))

        bonus = 0
        entry: PointTransaction | None = None
        if definition.point_value > 0:
            bonus = score(descriptor_for_unlock(definition.point_value, definition.tier), self.config)
            try:
                entry = await ledger.append(
                    db,
                    user_id=user_id,
                    amount=bonus,
                    transaction_type=TransactionType.BONUS.value,
                    idempotency_key=unlock_key(definition, user_id),
                    reason=f'Unlocked {definition.kind}: "{definition.name}"',
                    source_type=definition.kind,
                    source_id=str(definition.id),
                    occurred_at=now,
                )
            except DuplicateEventError as e:
                if e.existing is None:
                    # Lost an insert race; the rollback took the unlock row too.
                    await db.refresh(progress)
                    return Conflict(definition, None)
                bonus = 0
            if entry is not None:
                apply_amount(progress, bonus, self.config)

        await flush_progress(db, user_id)
        await db.commit()

        result = Unlocked(definition, bonus, now)
        logger.info("User %d unlocked %s %d (+%d)", user_id, definition.kind, definition.id, bonus)
        await events.publish(self.redis, events.ACHIEVEMENT_UNLOCKED_CHANNEL, to_event(user_id, result))
        if entry is not None:
            await events.publish(
                self.redis,
                events.POINTS_AWARDED_CHANNEL,
                PointsAwarded(
                    user_id=user_id,
                    amount=bonus,
                    reason=entry.reason,
                    new_balance=progress.current_points,
                    transaction_type=TransactionType.BONUS,
                ),
            )
        return result


def _new_unlock(definition: UnlockDefinition, user_id: int, now: datetime) -> UnlockRow:
    if isinstance(definition, BadgeDefinition):
        return UserBadge(user_id=user_id, badge_id=definition.id, unlocked_at=now, is_displayed=True)
    return UserAchievement(user_id=user_id, achievement_id=definition.id, unlocked_at=now)


async def _find_unlock(db: AsyncSession, definition: UnlockDefinition, user_id: int) -> UnlockRow | None:
    if isinstance(definition, BadgeDefinition):
        stmt = select(UserBadge).where(UserBadge.user_id == user_id, UserBadge.badge_id == definition.id)
    else:
        stmt = select(UserAchievement).where(
            UserAchievement.user_id == user_id,
            UserAchievement.achievement_id == definition.id,
        )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()
