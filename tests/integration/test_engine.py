"""End-to-end engine behaviour: points, idempotency, streaks, degradation."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from ttg.db.models import PointTransaction, UserAchievement, UserProgress
from ttg.errors import ConcurrencyConflict, ValidationError
from ttg.gamification import events, ledger
from ttg.gamification.aggregator import flush_progress, get_progress
from ttg.gamification.engine import AWARDED, DUPLICATE, POINTS_PENDING, GamificationEngine
from ttg.gamification.scoring import ScoringConfig

from factories import EMPTY_CATALOG, NOON, load_progress, make_action


class TestPoints:
    """Points land in the ledger and the snapshot together."""

    @pytest.mark.asyncio
    async def test_single_action(self, quiet_engine, session_factory):
        outcome = await quiet_engine.handle_action(make_action())
        assert outcome.status == AWARDED
        assert outcome.points.amount == 10
        assert outcome.points.new_balance == 10

        progress = await load_progress(session_factory, 1)
        assert progress.current_points == 10
        assert progress.total_points_earned == 10
        assert progress.current_streak == 1
        assert progress.last_activity_date == NOON.date()
        assert not progress.unlock_pending

    @pytest.mark.asyncio
    async def test_concurrent_actions_for_one_user(self, quiet_engine, session_factory):
        outcomes = await asyncio.gather(
            quiet_engine.handle_action(make_action()),
            quiet_engine.handle_action(make_action(action_type="focus_session", duration_minutes=20)),
        )
        assert sorted(o.points.amount for o in outcomes) == [10, 15]

        progress = await load_progress(session_factory, 1)
        assert progress.current_points == 25
        async with session_factory() as db:
            assert await ledger.sum_for(db, 1) == progress.current_points

    @pytest.mark.asyncio
    async def test_accepts_raw_payload(self, quiet_engine, session_factory):
        outcome = await quiet_engine.handle_action({
            "user_id": 5,
            "action_type": "task_created",
            "completed_at": "2026-03-04T12:00:00",
            "correlation_id": "raw-1",
        })
        assert outcome.points.amount == 2
        progress = await load_progress(session_factory, 5)
        assert progress.last_activity_date == NOON.date()

    @pytest.mark.asyncio
    async def test_ledger_entry_describes_action(self, quiet_engine, session_factory):
        await quiet_engine.handle_action(make_action(correlation_id="evt-x", source_id="task-9"))
        async with session_factory() as db:
            entry = await ledger.find_by_key(db, "action:evt-x")
        assert entry.transaction_type == "earn"
        assert entry.source_type == "task_completed"
        assert entry.source_id == "task-9"

    @pytest.mark.asyncio
    async def test_unknown_action_type_raises(self, quiet_engine):
        with pytest.raises(ValidationError):
            await quiet_engine.handle_action(make_action(action_type="cartwheel"))

    @pytest.mark.asyncio
    async def test_malformed_payload_raises(self, quiet_engine):
        with pytest.raises(ValidationError):
            await quiet_engine.handle_action({"user_id": 1, "action_type": "task_completed"})

    @pytest.mark.asyncio
    async def test_infinite_focus_duration_is_rejected_not_retried(self, quiet_engine, session_factory):
        payload = {
            "user_id": 1,
            "action_type": "focus_session",
            "completed_at": NOON.isoformat(),
            "correlation_id": "evt-inf",
            "duration_minutes": "inf",
        }
        with pytest.raises(ValidationError):
            await quiet_engine.handle_action(payload)
        async with session_factory() as db:
            assert await ledger.find_by_key(db, "action:evt-inf") is None

    @pytest.mark.asyncio
    async def test_score_cap_from_config(self, make_engine):
        engine = make_engine(catalog=EMPTY_CATALOG, config=ScoringConfig(cap=5))
        outcome = await engine.handle_action(make_action(action_type="board_column_cleared"))
        assert outcome.points.amount == 5


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_replayed_correlation_id(self, quiet_engine, session_factory):
        action = make_action(correlation_id="evt-dup")
        first = await quiet_engine.handle_action(action)
        second = await quiet_engine.handle_action(action)

        assert first.status == AWARDED
        assert second.status == DUPLICATE
        assert second.duplicate
        assert second.points is None
        progress = await load_progress(session_factory, 1)
        assert progress.current_points == 10

    @pytest.mark.asyncio
    async def test_concurrent_replays_land_once(self, quiet_engine, session_factory):
        action = make_action(correlation_id="evt-race")
        outcomes = await asyncio.gather(*(quiet_engine.handle_action(action) for _ in range(4)))
        assert sorted(o.status for o in outcomes) == [AWARDED, DUPLICATE, DUPLICATE, DUPLICATE]
        async with session_factory() as db:
            count = len((await db.execute(select(PointTransaction))).scalars().all())
        assert count == 1


class TestStreaks:
    @pytest.mark.asyncio
    async def test_consecutive_days(self, quiet_engine, session_factory):
        amounts = []
        for day in range(3):
            outcome = await quiet_engine.handle_action(make_action(completed_at=NOON + timedelta(days=day)))
            amounts.append(outcome.points.amount)

        # streak multiplier reaches 1.1 on day three
        assert amounts == [10, 10, 11]
        progress = await load_progress(session_factory, 1)
        assert progress.current_streak == 3
        assert progress.longest_streak == 3

    @pytest.mark.asyncio
    async def test_gap_resets(self, quiet_engine, session_factory):
        await quiet_engine.handle_action(make_action())
        await quiet_engine.handle_action(make_action(completed_at=NOON + timedelta(days=1)))
        await quiet_engine.handle_action(make_action(completed_at=NOON + timedelta(days=4)))
        progress = await load_progress(session_factory, 1)
        assert progress.current_streak == 1
        assert progress.longest_streak == 2
        assert progress.last_activity_date == (NOON + timedelta(days=4)).date()

    @pytest.mark.asyncio
    async def test_late_event_keeps_streak(self, quiet_engine, session_factory):
        await quiet_engine.handle_action(make_action())
        await quiet_engine.handle_action(make_action(completed_at=NOON + timedelta(days=1)))
        outcome = await quiet_engine.handle_action(make_action(completed_at=NOON - timedelta(days=5)))
        assert outcome.status == AWARDED
        progress = await load_progress(session_factory, 1)
        assert progress.current_streak == 2
        assert progress.last_activity_date == (NOON + timedelta(days=1)).date()


class TestProgression:
    @pytest.mark.asyncio
    async def test_tier_and_level_move_with_earnings(self, make_engine, session_factory):
        engine = make_engine(catalog=EMPTY_CATALOG, config=ScoringConfig(base_points={"task_completed": 400}))
        await engine.handle_action(make_action())
        progress = await load_progress(session_factory, 1)
        assert (progress.tier, progress.level) == ("bronze", 3)

        await engine.handle_action(make_action())
        progress = await load_progress(session_factory, 1)
        assert progress.total_points_earned == 800
        assert progress.tier == "silver"
        assert progress.level == 3
        assert progress.next_level_threshold == 901

    @pytest.mark.asyncio
    async def test_outcome_reports_level_and_tier_moves(self, make_engine):
        engine = make_engine(catalog=EMPTY_CATALOG, config=ScoringConfig(base_points={"task_completed": 400}))
        first = (await engine.handle_action(make_action())).progression
        assert (first.old_level, first.new_level) == (1, 3)
        assert first.leveled_up
        assert not first.tier_changed

        second = (await engine.handle_action(make_action())).progression
        assert not second.leveled_up
        assert (second.old_tier, second.new_tier) == ("bronze", "silver")

    @pytest.mark.asyncio
    async def test_small_award_changes_nothing(self, quiet_engine):
        change = (await quiet_engine.handle_action(make_action())).progression
        assert change.amount == 10
        assert not change.leveled_up
        assert not change.tier_changed


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, quiet_engine, session_factory):
        original = quiet_engine._apply_action
        calls = []

        async def flaky(db, action):
            calls.append(action.correlation_id)
            if len(calls) == 1:
                raise ConcurrencyConflict(action.user_id, "stale")
            return await original(db, action)

        quiet_engine._apply_action = flaky
        outcome = await quiet_engine.handle_action(make_action())
        assert outcome.status == AWARDED
        assert len(calls) == 2
        assert (await load_progress(session_factory, 1)).current_points == 10

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_pending(self, quiet_engine):
        async def always_stale(db, action):
            raise ConcurrencyConflict(action.user_id, "stale")

        quiet_engine._apply_action = always_stale
        outcome = await quiet_engine.handle_action(make_action())
        assert outcome.status == POINTS_PENDING

    @pytest.mark.asyncio
    async def test_stale_version_is_a_conflict(self, quiet_engine, session_factory):
        await quiet_engine.handle_action(make_action())

        async with session_factory() as stale, session_factory() as other:
            progress = await get_progress(stale, 1)
            await other.execute(
                update(UserProgress).where(UserProgress.user_id == 1).values(version=UserProgress.version + 1)
            )
            await other.commit()

            progress.current_points += 1
            with pytest.raises(ConcurrencyConflict):
                await flush_progress(stale, 1)


class TestDegradation:
    """Storage trouble comes back as points_pending, never as an exception."""

    @pytest.mark.asyncio
    async def test_database_down(self, settings):
        def broken_factory():
            raise OperationalError("SELECT 1", {}, Exception("database is down"))

        engine = GamificationEngine(broken_factory, catalog=EMPTY_CATALOG, settings=settings)
        outcome = await engine.handle_action(make_action())
        assert outcome.status == POINTS_PENDING
        assert outcome.pending
        assert outcome.points is None

    @pytest.mark.asyncio
    async def test_unlock_failure_is_settled_by_sweep(self, engine, session_factory):
        with patch.object(engine.evaluator, "evaluate", AsyncMock(side_effect=RuntimeError("boom"))):
            outcome = await engine.handle_action(make_action())

        assert outcome.status == AWARDED
        assert outcome.unlock_pending
        assert outcome.unlocks == ()
        progress = await load_progress(session_factory, 1)
        assert progress.unlock_pending
        assert progress.current_points == 10

        result = await engine.sweep(NOON.date())
        assert result.unlocks_settled == 1
        assert result.failures == []

        progress = await load_progress(session_factory, 1)
        assert not progress.unlock_pending
        assert progress.current_points == 20
        async with session_factory() as db:
            rows = (await db.execute(select(UserAchievement.achievement_id))).scalars().all()
        assert rows == [1]


class TestPublishing:
    @pytest.mark.asyncio
    async def test_points_awarded_published(self, make_engine):
        redis = AsyncMock()
        engine = make_engine(catalog=EMPTY_CATALOG, redis=redis)
        await engine.handle_action(make_action())

        redis.publish.assert_awaited_once()
        channel, payload = redis.publish.await_args.args
        assert channel == events.POINTS_AWARDED_CHANNEL
        body = json.loads(payload)
        assert body["amount"] == 10
        assert body["new_balance"] == 10
        assert body["transaction_type"] == "earn"

    @pytest.mark.asyncio
    async def test_unlock_events_published(self, make_engine):
        redis = AsyncMock()
        engine = make_engine(redis=redis)
        await engine.handle_action(make_action())

        channels = [call.args[0] for call in redis.publish.await_args_list]
        assert channels == [
            events.POINTS_AWARDED_CHANNEL,
            events.ACHIEVEMENT_UNLOCKED_CHANNEL,
            events.POINTS_AWARDED_CHANNEL,
        ]
        unlocked = json.loads(redis.publish.await_args_list[1].args[1])
        assert unlocked["achievement_id"] == 1
        assert unlocked["bonus_awarded"] == 10

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_the_action(self, make_engine, session_factory):
        redis = AsyncMock()
        redis.publish.side_effect = ConnectionError("redis gone")
        engine = make_engine(redis=redis)
        outcome = await engine.handle_action(make_action())

        assert outcome.status == AWARDED
        assert [u.achievement_id for u in outcome.unlocks] == [1]
        assert (await load_progress(session_factory, 1)).current_points == 20
