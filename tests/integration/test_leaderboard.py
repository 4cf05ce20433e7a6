"""Leaderboards: ordering, scopes, paging and the Redis cache."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from ttg.db.models import UserProgress
from ttg.errors import ValidationError
from ttg.gamification import leaderboard
from ttg.schemas import LeaderboardMetric, LeaderboardScope


def _progress(user_id: int, points: int, streak: int = 0) -> UserProgress:
    return UserProgress(
        user_id=user_id,
        current_points=points,
        total_points_earned=points,
        total_points_spent=0,
        level=1,
        next_level_threshold=100,
        current_streak=streak,
        longest_streak=streak,
        tier="bronze",
        unlock_pending=False,
        updated_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def seeded(engine, db):
    """Three users: 2 leads with 70, 1 and 3 tie on 50. 1 and 2 share family 10."""

    async def _seed():
        db.add_all([_progress(1, 50, streak=4), _progress(2, 70, streak=1), _progress(3, 50, streak=9)])
        await db.commit()
        await engine.upsert_member(1, "ana", 10)
        await engine.upsert_member(2, "ben", 10)

    return _seed


def _board(snapshot):
    return [(e.rank, e.user_id, e.username, e.value) for e in snapshot.entries]


class TestOrdering:
    @pytest.mark.asyncio
    async def test_global_with_tie_break(self, engine, seeded):
        await seeded()
        snapshot = await engine.leaderboard()
        assert _board(snapshot) == [(1, 2, "ben", 70), (2, 1, "ana", 50), (3, 3, "user-3", 50)]
        assert snapshot.total == 3
        assert snapshot.scope == LeaderboardScope.GLOBAL
        assert snapshot.family_id is None

    @pytest.mark.asyncio
    async def test_other_metric(self, engine, seeded):
        await seeded()
        snapshot = await engine.leaderboard("current_streak")
        assert [e.user_id for e in snapshot.entries] == [3, 1, 2]
        assert snapshot.metric == LeaderboardMetric.CURRENT_STREAK

    @pytest.mark.asyncio
    async def test_unknown_metric(self, engine):
        with pytest.raises(ValidationError):
            await engine.leaderboard("karma")

    @pytest.mark.asyncio
    async def test_empty(self, engine):
        snapshot = await engine.leaderboard()
        assert snapshot.entries == []
        assert snapshot.total == 0


class TestScopes:
    @pytest.mark.asyncio
    async def test_family(self, engine, seeded):
        await seeded()
        snapshot = await engine.leaderboard(scope="family", family_id=10)
        assert _board(snapshot) == [(1, 2, "ben", 70), (2, 1, "ana", 50)]
        assert snapshot.family_id == 10

    @pytest.mark.asyncio
    async def test_family_needs_id(self, engine):
        with pytest.raises(ValidationError):
            await engine.leaderboard(scope=LeaderboardScope.FAMILY)

    @pytest.mark.asyncio
    async def test_member_moves_family(self, engine, seeded):
        await seeded()
        await engine.upsert_member(2, "ben", 20)
        snapshot = await engine.leaderboard(scope="family", family_id=10)
        assert [e.user_id for e in snapshot.entries] == [1]

    @pytest.mark.asyncio
    async def test_family_ids(self, engine, seeded, db):
        await seeded()
        await engine.upsert_member(3, "cat", 20)
        assert await leaderboard.family_ids(db) == [10, 20]


class TestPaging:
    @pytest.mark.asyncio
    async def test_second_page_keeps_absolute_rank(self, engine, seeded):
        await seeded()
        snapshot = await engine.leaderboard(page=2, per_page=2)
        assert _board(snapshot) == [(3, 3, "user-3", 50)]
        assert snapshot.total == 3
        assert (snapshot.page, snapshot.per_page) == (2, 2)

    @pytest.mark.asyncio
    async def test_page_past_the_end(self, engine, seeded):
        await seeded()
        assert (await engine.leaderboard(page=9, per_page=2)).entries == []

    @pytest.mark.asyncio
    async def test_per_page_is_clamped(self, engine, seeded, settings):
        await seeded()
        snapshot = await engine.leaderboard(per_page=10_000)
        assert snapshot.per_page == settings.leaderboard_max_page_size


class TestCache:
    @pytest.mark.asyncio
    async def test_miss_builds_and_caches(self, make_engine, seeded, settings):
        redis = AsyncMock()
        redis.get.return_value = None
        engine = make_engine(redis=redis)
        await seeded()

        await engine.leaderboard()
        key, payload = redis.set.await_args.args
        assert key == "leaderboard:global:current_points"
        assert redis.set.await_args.kwargs["ex"] == settings.leaderboard_refresh_seconds
        assert json.loads(payload)["rows"][0] == [2, "ben", 70]

    @pytest.mark.asyncio
    async def test_hit_serves_cached_board(self, make_engine, seeded, db):
        redis = AsyncMock()
        redis.get.return_value = None
        engine = make_engine(redis=redis)
        await seeded()
        await engine.leaderboard()
        redis.get.return_value = redis.set.await_args.args[1]

        await db.execute(update(UserProgress).where(UserProgress.user_id == 3).values(current_points=999))
        await db.commit()

        snapshot = await engine.leaderboard()
        assert [e.user_id for e in snapshot.entries] == [2, 1, 3]
        assert redis.set.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_failures_fall_back_to_database(self, make_engine, seeded):
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("redis gone")
        redis.set.side_effect = ConnectionError("redis gone")
        engine = make_engine(redis=redis)
        await seeded()
        assert [e.user_id for e in (await engine.leaderboard()).entries] == [2, 1, 3]

    @pytest.mark.asyncio
    async def test_malformed_cache_entry_is_ignored(self, make_engine, seeded):
        redis = AsyncMock()
        redis.get.return_value = "{not json"
        engine = make_engine(redis=redis)
        await seeded()
        assert (await engine.leaderboard()).total == 3

    def test_keys(self):
        assert leaderboard.build_leaderboard_key(
            LeaderboardMetric.LONGEST_STREAK, LeaderboardScope.FAMILY, 7
        ) == "leaderboard:family:7:longest_streak"
