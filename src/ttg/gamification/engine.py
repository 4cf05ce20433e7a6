"""Gamification engine: the per-user unit of work.

Every write for a user runs under that user's lock in two steps:

1. One transaction: ledger append, aggregate update, activity counters,
   challenge progress and rewards. ``unlock_pending`` is set in the same
   transaction.
2. Unlock evaluation (reward badges first, then the catalog), each unlock
   committing on its own, then ``unlock_pending`` is cleared.

If step 2 fails the flag stays set and the reconciliation sweep finishes
the job. Failures in step 1 come back as a ``points_pending`` outcome and
never raise into the caller, except for ValidationError which is the
caller's own mistake.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ttg.config import Settings, get_settings
from ttg.db.models import Member, PointTransaction, UserBadge, UserChallenge
from ttg.errors import ConcurrencyConflict, DuplicateEventError, InsufficientPointsError, ValidationError
from ttg.gamification import challenge_tracker, events, ledger, leaderboard, reconciliation, rewards
from ttg.gamification.aggregator import (
    ProgressChange,
    UserLockRegistry,
    apply_amount,
    bump_counters,
    counter_deltas,
    flush_progress,
    get_or_create_progress,
    get_progress,
    next_streak,
    record_activity_day,
)
from ttg.gamification.catalog import AchievementDefinition, Catalog, ChallengeDefinition, load_catalog
from ttg.gamification.challenge_tracker import ChallengeCompletion
from ttg.gamification.scoring import ScoringConfig, descriptor_for_action, explain
from ttg.gamification.stats import gamification_stats
from ttg.gamification.suggestions import available_achievements, build_suggestions
from ttg.gamification.unlock_evaluator import Unlocked, UnlockEvaluator, to_event
from ttg.schemas import (
    AchievementUnlocked,
    ActionCompleted,
    ActionType,
    GamificationStats,
    LeaderboardMetric,
    LeaderboardScope,
    LeaderboardSnapshot,
    LoginStatus,
    PointsAwarded,
    RedeemedReward,
    RewardOffer,
    RewardRedemption,
    Suggestion,
    TransactionType,
    parse_action,
    parse_redemption,
)

logger = logging.getLogger(__name__)
log = structlog.get_logger()

T = TypeVar("T")

LOGIN_STREAK_BONUS = 2
LOGIN_STREAK_BONUS_CAP_DAYS = 30

AWARDED = "awarded"
DUPLICATE = "duplicate"
POINTS_PENDING = "points_pending"


@dataclass(frozen=True)
class ActionOutcome:
    """What happened to one inbound event."""

    status: str
    points: PointsAwarded | None = None
    unlocks: tuple[AchievementUnlocked, ...] = ()
    challenge_rewards: tuple[PointsAwarded, ...] = ()
    unlock_pending: bool = False
    progression: ProgressChange | None = None
    reward: RedeemedReward | None = None

    @property
    def duplicate(self) -> bool:
        return self.status == DUPLICATE

    @property
    def pending(self) -> bool:
        return self.status == POINTS_PENDING


@dataclass(frozen=True)
class _Applied:
    points: PointsAwarded
    completions: tuple[ChallengeCompletion, ...]
    balance_after_rewards: int
    progression: ProgressChange


def scoring_config_from_settings(settings: Settings) -> ScoringConfig:
    return ScoringConfig(cap=settings.score_cap)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime. Naive input is taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def login_bonus(base: int, streak: int) -> int:
    return base + LOGIN_STREAK_BONUS * min(max(streak, 0), LOGIN_STREAK_BONUS_CAP_DAYS)


class GamificationEngine:
    """Entry point for actions, redemptions and reads."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog | None = None,
        config: ScoringConfig | None = None,
        redis: Any = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.catalog = catalog or load_catalog(self.settings.catalog_path)
        self.config = config or scoring_config_from_settings(self.settings)
        self.redis = redis
        self.locks = UserLockRegistry()
        self.evaluator = UnlockEvaluator(self.catalog, self.config, redis)

    # ------------------------------------------------------------------
    # Unit-of-work plumbing
    # ------------------------------------------------------------------

    async def _with_retries(self, user_id: int, unit: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``unit`` in a fresh session, re-reading on ConcurrencyConflict."""
        attempts = max(1, self.settings.max_conflict_retries)
        for attempt in range(1, attempts + 1):
            async with self.session_factory() as db:
                try:
                    return await unit(db)
                except ConcurrencyConflict:
                    if attempt == attempts:
                        raise
                    logger.info("Progress conflict for user %d, retry %d/%d", user_id, attempt, attempts - 1)
        raise ConcurrencyConflict(user_id, "retries exhausted")

    async def _settle_unlocks(self, user_id: int, reward_badges: list[int]) -> list[Unlocked]:
        """Step 2: reward badges, catalog evaluation, then clear the pending flag."""
        async with self.session_factory() as db:
            progress = await get_or_create_progress(db, user_id)
            unlocked: list[Unlocked] = []
            for badge_id in reward_badges:
                result = await self.evaluator.award_badge(db, progress, badge_id)
                if isinstance(result, Unlocked):
                    unlocked.append(result)
            for result in await self.evaluator.evaluate(db, progress):
                if isinstance(result, Unlocked):
                    unlocked.append(result)
            progress.unlock_pending = False
            await flush_progress(db, user_id)
            await db.commit()
            return unlocked

    async def _finish(self, user_id: int, applied: _Applied) -> ActionOutcome:
        """Publish step-1 events and run step 2 under the caller's lock."""
        change = applied.progression
        if change.leveled_up or change.tier_changed:
            log.info(
                "progression_changed",
                user_id=user_id,
                old_level=change.old_level,
                new_level=change.new_level,
                old_tier=change.old_tier,
                new_tier=change.new_tier,
            )
        await events.publish(self.redis, events.POINTS_AWARDED_CHANNEL, applied.points)
        reward_events = []
        for completion in applied.completions:
            if completion.reward_points <= 0:
                continue
            reward = PointsAwarded(
                user_id=user_id,
                amount=completion.reward_points,
                reason=f'Completed challenge: "{completion.challenge.name}"',
                new_balance=applied.balance_after_rewards,
                transaction_type=TransactionType.CHALLENGE_REWARD,
            )
            reward_events.append(reward)
            await events.publish(self.redis, events.POINTS_AWARDED_CHANNEL, reward)

        reward_badges = [c.challenge.reward_badge_id for c in applied.completions if c.challenge.reward_badge_id]
        try:
            unlocked = await self._settle_unlocks(user_id, reward_badges)
        except Exception:
            log.warning("unlock_evaluation_deferred", user_id=user_id, exc_info=True)
            return ActionOutcome(
                AWARDED, applied.points, (), tuple(reward_events), unlock_pending=True, progression=applied.progression
            )

        return ActionOutcome(
            AWARDED,
            applied.points,
            tuple(to_event(user_id, u) for u in unlocked),
            tuple(reward_events),
            progression=applied.progression,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def handle_action(self, action: ActionCompleted | dict[str, Any]) -> ActionOutcome:
        """Score and record one completed action.

        Replays of a correlation id return a ``duplicate`` outcome. Storage
        trouble returns ``points_pending``; the event can be replayed later.
        """
        if not isinstance(action, ActionCompleted):
            action = parse_action(action)
        if not self.config.knows(action.action_type):
            raise ValidationError(f"Unknown action type {action.action_type!r}")
        action = action.model_copy(update={
            "completed_at": as_utc(action.completed_at),
            "due_date": as_utc(action.due_date) if action.due_date else None,
        })

        try:
            async with self.locks.lock_for(action.user_id):
                applied = await self._with_retries(action.user_id, lambda db: self._apply_action(db, action))
                if applied is None:
                    log.info("duplicate_action", user_id=action.user_id, correlation_id=action.correlation_id)
                    return ActionOutcome(DUPLICATE)
                return await self._finish(action.user_id, applied)
        except ValidationError:
            raise
        except Exception:
            log.error(
                "gamification degraded",
                user_id=action.user_id,
                correlation_id=action.correlation_id,
                action_type=action.action_type,
                exc_info=True,
            )
            return ActionOutcome(POINTS_PENDING)

    async def _apply_action(self, db: AsyncSession, action: ActionCompleted) -> _Applied | None:
        key = f"action:{action.correlation_id}"
        if await ledger.find_by_key(db, key) is not None:
            return None

        progress = await get_or_create_progress(db, action.user_id)
        record_activity_day(progress, action.completed_at.date())
        breakdown = explain(descriptor_for_action(action, progress.current_streak), self.config)

        try:
            entry = await ledger.append(
                db,
                user_id=action.user_id,
                amount=breakdown.points,
                transaction_type=TransactionType.EARN.value,
                idempotency_key=key,
                reason=action.action_type.replace("_", " "),
                source_type=action.action_type,
                source_id=action.source_id,
                occurred_at=action.completed_at,
            )
        except DuplicateEventError:
            return None
        change = apply_amount(progress, breakdown.points, self.config)
        balance = progress.current_points

        await bump_counters(db, action.user_id, counter_deltas(action))
        completions = await challenge_tracker.track(
            db, self.catalog, progress, action.action_type, action.completed_at, self.config
        )
        progress.unlock_pending = True
        await flush_progress(db, action.user_id)
        await db.commit()

        log.info(
            "points_awarded",
            user_id=action.user_id,
            amount=breakdown.points,
            factors=dict(breakdown.factors),
            streak=progress.current_streak,
            tier=progress.tier,
        )
        return _Applied(
            points=PointsAwarded(
                user_id=action.user_id,
                amount=breakdown.points,
                reason=entry.reason,
                new_balance=balance,
            ),
            completions=tuple(completions),
            balance_after_rewards=progress.current_points,
            progression=change,
        )

    async def claim_daily_login(self, user_id: int, now: datetime | None = None) -> ActionOutcome:
        """Once-per-UTC-day login bonus. A second claim the same day is a duplicate."""
        now = as_utc(now or datetime.now(timezone.utc))
        try:
            async with self.locks.lock_for(user_id):
                applied = await self._with_retries(user_id, lambda db: self._apply_login(db, user_id, now))
                if applied is None:
                    return ActionOutcome(DUPLICATE)
                return await self._finish(user_id, applied)
        except Exception:
            log.error("gamification degraded", user_id=user_id, action_type="daily_login", exc_info=True)
            return ActionOutcome(POINTS_PENDING)

    async def _apply_login(self, db: AsyncSession, user_id: int, now: datetime) -> _Applied | None:
        today = now.date()
        key = f"login:{user_id}:{today.isoformat()}"
        if await ledger.find_by_key(db, key) is not None:
            return None

        progress = await get_or_create_progress(db, user_id)
        record_activity_day(progress, today)
        amount = login_bonus(self.config.base_points[ActionType.DAILY_LOGIN.value], progress.current_streak)

        try:
            entry = await ledger.append(
                db,
                user_id=user_id,
                amount=amount,
                transaction_type=TransactionType.EARN.value,
                idempotency_key=key,
                reason="daily login",
                source_type=ActionType.DAILY_LOGIN.value,
                source_id=today.isoformat(),
                occurred_at=now,
            )
        except DuplicateEventError:
            return None
        change = apply_amount(progress, amount, self.config)
        balance = progress.current_points

        await bump_counters(db, user_id, {ActionType.DAILY_LOGIN.value: 1})
        completions = await challenge_tracker.track(
            db, self.catalog, progress, ActionType.DAILY_LOGIN.value, now, self.config
        )
        progress.unlock_pending = True
        await flush_progress(db, user_id)
        await db.commit()

        return _Applied(
            points=PointsAwarded(user_id=user_id, amount=amount, reason=entry.reason, new_balance=balance),
            completions=tuple(completions),
            balance_after_rewards=progress.current_points,
            progression=change,
        )

    async def login_status(self, user_id: int, now: datetime | None = None) -> LoginStatus:
        now = as_utc(now or datetime.now(timezone.utc))
        today = now.date()
        async with self.session_factory() as db:
            claimed = await ledger.find_by_key(db, f"login:{user_id}:{today.isoformat()}") is not None
            progress = await get_progress(db, user_id)
        current, last = (progress.current_streak, progress.last_activity_date) if progress else (0, None)
        prospective, _ = next_streak(current, last, today)
        return LoginStatus(
            user_id=user_id,
            claimed_today=claimed,
            current_streak=current,
            bonus_if_claimed=login_bonus(self.config.base_points[ActionType.DAILY_LOGIN.value], prospective),
        )

    # ------------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------------

    async def redeem(self, redemption: RewardRedemption | dict[str, Any]) -> ActionOutcome:
        """Spend points on a reward.

        Raises InsufficientPointsError when the balance is short and
        ValidationError when the reward's minimum level is not reached.
        """
        if not isinstance(redemption, RewardRedemption):
            redemption = parse_redemption(redemption)
        try:
            async with self.locks.lock_for(redemption.user_id):
                redeemed = await self._with_retries(
                    redemption.user_id, lambda db: self._apply_redemption(db, redemption)
                )
        except ValidationError:
            raise
        except Exception:
            log.error(
                "gamification degraded",
                user_id=redemption.user_id,
                correlation_id=redemption.correlation_id,
                action_type="redemption",
                exc_info=True,
            )
            return ActionOutcome(POINTS_PENDING)

        if redeemed is None:
            return ActionOutcome(DUPLICATE)
        points, reward = redeemed
        await events.publish(self.redis, events.POINTS_AWARDED_CHANNEL, points)
        return ActionOutcome(AWARDED, points, reward=reward)

    async def _apply_redemption(
        self, db: AsyncSession, redemption: RewardRedemption
    ) -> tuple[PointsAwarded, RedeemedReward] | None:
        key = f"redeem:{redemption.correlation_id}"
        if await ledger.find_by_key(db, key) is not None:
            return None

        progress = await get_or_create_progress(db, redemption.user_id)
        if redemption.minimum_level is not None and progress.level < redemption.minimum_level:
            raise ValidationError(
                f"Reward {redemption.reward_id} needs level {redemption.minimum_level}, user is {progress.level}"
            )
        if progress.current_points < redemption.point_cost:
            raise InsufficientPointsError(redemption.user_id, progress.current_points, redemption.point_cost)

        label = redemption.reward_name or f"reward {redemption.reward_id}"
        try:
            entry = await ledger.append(
                db,
                user_id=redemption.user_id,
                amount=-redemption.point_cost,
                transaction_type=TransactionType.SPEND.value,
                idempotency_key=key,
                reason=f"Redeemed {label}",
                source_type="reward",
                source_id=str(redemption.reward_id),
            )
        except DuplicateEventError:
            return None
        apply_amount(progress, -redemption.point_cost, self.config)
        held = rewards.record_redemption(db, redemption, entry, label)
        await flush_progress(db, redemption.user_id)
        await db.commit()

        log.info("reward_redeemed", user_id=redemption.user_id, reward_id=redemption.reward_id,
                 cost=redemption.point_cost, balance=progress.current_points)
        points = PointsAwarded(
            user_id=redemption.user_id,
            amount=-redemption.point_cost,
            reason=entry.reason,
            new_balance=progress.current_points,
            transaction_type=TransactionType.SPEND,
        )
        return points, RedeemedReward.model_validate(held)

    async def use_reward(self, user_id: int, user_reward_id: int, now: datetime | None = None) -> RedeemedReward:
        """Spend a reward the user redeemed earlier."""
        async with self.session_factory() as db:
            return await rewards.use_reward(db, user_id, user_reward_id, now)

    async def reward_inventory(self, user_id: int, include_used: bool = False) -> list[RedeemedReward]:
        async with self.session_factory() as db:
            return await rewards.inventory(db, user_id, include_used)

    async def available_rewards(self, user_id: int, offers: Iterable[RewardOffer]) -> list[RewardOffer]:
        """Filter the tracker's offers down to what the user's level allows."""
        async with self.session_factory() as db:
            progress = await get_progress(db, user_id)
        return rewards.available_rewards(progress.level if progress else 1, offers)

    # ------------------------------------------------------------------
    # Challenges and badges
    # ------------------------------------------------------------------

    async def enroll(self, user_id: int, challenge_id: int, now: datetime | None = None) -> UserChallenge:
        async with self.session_factory() as db:
            return await challenge_tracker.enroll(db, self.catalog, user_id, challenge_id, now)

    async def claim_challenge_reward(self, user_id: int, challenge_id: int) -> UserChallenge:
        async with self.locks.lock_for(user_id), self.session_factory() as db:
            return await challenge_tracker.claim_reward(db, user_id, challenge_id)

    async def active_challenges(
        self, user_id: int, now: datetime | None = None
    ) -> list[tuple[ChallengeDefinition, UserChallenge | None]]:
        async with self.session_factory() as db:
            return await challenge_tracker.active_challenges(db, self.catalog, user_id, now)

    async def set_badge_displayed(self, user_id: int, badge_id: int, displayed: bool) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(UserBadge).where(UserBadge.user_id == user_id, UserBadge.badge_id == badge_id)
            )
            badge = result.scalar_one_or_none()
            if badge is None:
                raise ValidationError(f"User {user_id} has no badge {badge_id}")
            badge.is_displayed = displayed
            await db.commit()

    # ------------------------------------------------------------------
    # Directory mirror
    # ------------------------------------------------------------------

    async def upsert_member(self, user_id: int, username: str, family_id: int | None = None) -> None:
        async with self.session_factory() as db:
            member = await db.get(Member, user_id)
            if member is None:
                db.add(Member(user_id=user_id, username=username, family_id=family_id))
            else:
                member.username = username
                member.family_id = family_id
            await db.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def leaderboard(
        self,
        metric: LeaderboardMetric | str = LeaderboardMetric.CURRENT_POINTS,
        scope: LeaderboardScope | str = LeaderboardScope.GLOBAL,
        family_id: int | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> LeaderboardSnapshot:
        try:
            metric = LeaderboardMetric(metric)
            scope = LeaderboardScope(scope)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        async with self.session_factory() as db:
            return await leaderboard.rank(
                db,
                self.redis,
                metric,
                scope,
                family_id,
                page,
                per_page or self.settings.leaderboard_page_size,
                ttl=self.settings.leaderboard_refresh_seconds,
                max_per_page=self.settings.leaderboard_max_page_size,
            )

    async def history(
        self, user_id: int, page: int = 1, per_page: int = 50
    ) -> tuple[list[PointTransaction], int]:
        async with self.session_factory() as db:
            return await ledger.history(db, user_id, page, per_page)

    async def stats(self, user_id: int, now: datetime | None = None) -> GamificationStats:
        async with self.session_factory() as db:
            return await gamification_stats(db, user_id, now)

    async def available_achievements(self, user_id: int) -> list[AchievementDefinition]:
        async with self.session_factory() as db:
            return await available_achievements(db, self.catalog, user_id)

    async def suggestions(
        self, user_id: int, offers: Iterable[RewardOffer] = (), now: datetime | None = None
    ) -> list[Suggestion]:
        now = as_utc(now or datetime.now(timezone.utc))
        login = await self.login_status(user_id, now)
        async with self.session_factory() as db:
            return await build_suggestions(db, self.catalog, user_id, login, offers, self.config, now)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_user(self, user_id: int) -> reconciliation.ReconcileReport:
        async with self.locks.lock_for(user_id):
            report = await self._with_retries(
                user_id, lambda db: reconciliation.reconcile_user(db, user_id, self.config, self.catalog)
            )
            if report.unlock_pending or report.missing_reward_badges:
                await self._settle_unlocks(user_id, list(report.missing_reward_badges))
            return report

    async def sweep(self, today: date | None = None) -> reconciliation.SweepResult:
        return await reconciliation.sweep(self, today)
