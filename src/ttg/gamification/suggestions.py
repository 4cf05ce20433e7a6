"""What a user could go for next: unowned achievements and nudges."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import UserAchievement
from ttg.errors import CriteriaEvaluationError
from ttg.gamification import challenge_tracker
from ttg.gamification.aggregator import get_progress
from ttg.gamification.catalog import AchievementDefinition, Catalog
from ttg.gamification.multipliers import DIFFICULTY_MULTIPLIERS
from ttg.gamification.rewards import available_rewards
from ttg.gamification.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, descriptor_for_unlock, score
from ttg.schemas import LoginStatus, RewardOffer, Suggestion, SuggestionType


async def available_achievements(db: AsyncSession, catalog: Catalog, user_id: int) -> list[AchievementDefinition]:
    """Achievements the user has not unlocked, by category then name."""
    result = await db.execute(select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id))
    owned = set(result.scalars())
    return sorted(
        (a for a in catalog.achievements.values() if a.id not in owned),
        key=lambda a: (a.category, a.name),
    )


def _reachable(definition: AchievementDefinition) -> bool:
    if not definition.awarded_by_criteria:
        return False
    try:
        definition.predicate  # noqa: B018
    except CriteriaEvaluationError:
        return False
    return True


def _easiest(candidates: Iterable[AchievementDefinition]) -> AchievementDefinition | None:
    # Unknown difficulty labels sort with "medium".
    reachable = [a for a in candidates if _reachable(a)]
    if not reachable:
        return None
    return min(reachable, key=lambda a: (DIFFICULTY_MULTIPLIERS.get(a.difficulty, 1.0), a.point_value, a.id))


async def build_suggestions(
    db: AsyncSession,
    catalog: Catalog,
    user_id: int,
    login: LoginStatus,
    offers: Iterable[RewardOffer] = (),
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
    now: datetime | None = None,
) -> list[Suggestion]:
    """Up to four nudges: check in, an achievement, a reward, a challenge."""
    now = now or datetime.now(timezone.utc)
    progress = await get_progress(db, user_id)
    level = progress.level if progress else 1
    balance = progress.current_points if progress else 0

    out: list[Suggestion] = []
    if not login.claimed_today:
        out.append(Suggestion(
            type=SuggestionType.LOGIN,
            title="Check in today",
            description=f"Log in today to keep your {login.current_streak} day streak going.",
            points=login.bonus_if_claimed,
        ))

    achievement = _easiest(await available_achievements(db, catalog, user_id))
    if achievement is not None:
        out.append(Suggestion(
            type=SuggestionType.ACHIEVEMENT,
            title="Unlock an achievement",
            description=f'Try to unlock "{achievement.name}": {achievement.description}',
            points=score(descriptor_for_unlock(achievement.point_value, achievement.tier), config),
            target_id=achievement.id,
        ))

    affordable = [o for o in available_rewards(level, offers) if o.point_cost <= balance]
    if affordable:
        reward = affordable[0]
        out.append(Suggestion(
            type=SuggestionType.REWARD,
            title="Redeem a reward",
            description=f'You have enough points to redeem "{reward.name}"',
            target_id=reward.reward_id,
        ))

    open_challenges = [
        (challenge, enrollment)
        for challenge, enrollment in await challenge_tracker.active_challenges(db, catalog, user_id, now)
        if enrollment is not None and not enrollment.is_completed
    ]
    if open_challenges:
        challenge, enrollment = min(
            open_challenges, key=lambda pair: (pair[0].target_count - pair[1].current_progress, pair[0].id)
        )
        remaining = challenge.target_count - enrollment.current_progress
        out.append(Suggestion(
            type=SuggestionType.CHALLENGE,
            title="Complete a challenge",
            description=f'Work on "{challenge.name}": {remaining} more to go',
            points=challenge.point_reward,
            target_id=challenge.id,
        ))
    return out
