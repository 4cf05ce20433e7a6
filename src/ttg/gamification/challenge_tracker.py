"""Time-boxed challenge enrollment, progress and rewards."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import UserBadge, UserChallenge, UserProgress
from ttg.errors import ValidationError
from ttg.gamification import ledger
from ttg.gamification.aggregator import apply_amount
from ttg.gamification.catalog import Catalog, ChallengeDefinition
from ttg.gamification.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig
from ttg.schemas import TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeCompletion:
    challenge: ChallengeDefinition
    reward_points: int
    completed_at: datetime


def challenge_key(challenge_id: int, user_id: int) -> str:
    return f"challenge:{challenge_id}:{user_id}"


async def get_enrollment(db: AsyncSession, user_id: int, challenge_id: int) -> UserChallenge | None:
    result = await db.execute(
        select(UserChallenge).where(
            UserChallenge.user_id == user_id,
            UserChallenge.challenge_id == challenge_id,
        )
    )
    return result.scalar_one_or_none()


async def enroll(
    db: AsyncSession,
    catalog: Catalog,
    user_id: int,
    challenge_id: int,
    now: datetime | None = None,
) -> UserChallenge:
    """Enroll a user in an active challenge. Enrolling twice returns the existing row."""
    now = now or datetime.now(timezone.utc)
    challenge = catalog.challenges.get(challenge_id)
    if challenge is None:
        raise ValidationError(f"Unknown challenge {challenge_id}")
    if not challenge.is_active(now):
        raise ValidationError(f"Challenge {challenge_id} is not active")

    existing = await get_enrollment(db, user_id, challenge_id)
    if existing is not None:
        return existing

    enrollment = UserChallenge(
        user_id=user_id,
        challenge_id=challenge_id,
        current_progress=0,
        is_completed=False,
        is_reward_claimed=False,
        enrolled_at=now,
    )
    db.add(enrollment)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_enrollment(db, user_id, challenge_id)
        if existing is None:
            raise
        return existing

    logger.info("User %d enrolled in challenge %d", user_id, challenge_id)
    return enrollment


async def track(
    db: AsyncSession,
    catalog: Catalog,
    progress: UserProgress,
    action_type: str,
    at: datetime,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> list[ChallengeCompletion]:
    """Advance every matching enrollment by one and pay out completions.

    Runs inside the caller's transaction and does not commit. Progress only
    moves while the challenge is open and incomplete, so completion flips
    at most once.
    """
    result = await db.execute(
        select(UserChallenge).where(
            UserChallenge.user_id == progress.user_id,
            UserChallenge.is_completed.is_(False),
        )
    )
    completions: list[ChallengeCompletion] = []
    for enrollment in list(result.scalars()):
        challenge = catalog.challenges.get(enrollment.challenge_id)
        if challenge is None or challenge.activity_type != action_type or not challenge.is_active(at):
            continue

        enrollment.current_progress += 1
        if enrollment.current_progress < challenge.target_count:
            continue

        enrollment.current_progress = challenge.target_count
        enrollment.is_completed = True
        enrollment.completed_at = at

        if challenge.point_reward > 0:
            await ledger.append(
                db,
                user_id=progress.user_id,
                amount=challenge.point_reward,
                transaction_type=TransactionType.CHALLENGE_REWARD.value,
                idempotency_key=challenge_key(challenge.id, progress.user_id),
                reason=f'Completed challenge: "{challenge.name}"',
                source_type="challenge",
                source_id=str(challenge.id),
                occurred_at=at,
            )
            apply_amount(progress, challenge.point_reward, config)

        logger.info("User %d completed challenge %d", progress.user_id, challenge.id)
        completions.append(ChallengeCompletion(challenge, challenge.point_reward, at))
    return completions


async def claim_reward(db: AsyncSession, user_id: int, challenge_id: int) -> UserChallenge:
    """Mark a completed challenge's reward as claimed."""
    enrollment = await get_enrollment(db, user_id, challenge_id)
    if enrollment is None:
        raise ValidationError(f"User {user_id} is not enrolled in challenge {challenge_id}")
    if not enrollment.is_completed:
        raise ValidationError(f"Challenge {challenge_id} is not completed yet")
    if enrollment.is_reward_claimed:
        raise ValidationError(f"Reward for challenge {challenge_id} already claimed")

    enrollment.is_reward_claimed = True
    enrollment.reward_claimed_at = datetime.now(timezone.utc)
    await db.commit()
    return enrollment


async def active_challenges(
    db: AsyncSession,
    catalog: Catalog,
    user_id: int,
    now: datetime | None = None,
) -> list[tuple[ChallengeDefinition, UserChallenge | None]]:
    """Open challenges, each with the user's enrollment if there is one."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(select(UserChallenge).where(UserChallenge.user_id == user_id))
    enrollments = {row.challenge_id: row for row in result.scalars()}
    return [
        (challenge, enrollments.get(challenge.id))
        for challenge in sorted(catalog.challenges.values(), key=lambda c: c.end_date)
        if challenge.is_active(now)
    ]


async def missing_reward_badges(db: AsyncSession, catalog: Catalog, user_id: int) -> list[int]:
    """Reward badges of completed challenges the user does not hold yet."""
    result = await db.execute(
        select(UserChallenge.challenge_id).where(
            UserChallenge.user_id == user_id,
            UserChallenge.is_completed.is_(True),
        )
    )
    wanted = {
        catalog.challenges[cid].reward_badge_id
        for cid in result.scalars()
        if cid in catalog.challenges and catalog.challenges[cid].reward_badge_id is not None
    }
    if not wanted:
        return []
    held = await db.execute(
        select(UserBadge.badge_id).where(UserBadge.user_id == user_id, UserBadge.badge_id.in_(sorted(wanted)))
    )
    return sorted(wanted - set(held.scalars()))
