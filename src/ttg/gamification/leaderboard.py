"""Leaderboards over the progress snapshot.

Read only. A full ranking is built from the database, cached in Redis as
JSON for ``leaderboard_refresh_seconds`` and paged from the cache; readers
may see a board up to one refresh interval old. Ordering is value
descending, ties broken by ascending user id, which a Redis sorted set
cannot express, hence the JSON list.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import Member, UserProgress
from ttg.errors import ValidationError
from ttg.schemas import LeaderboardEntry, LeaderboardMetric, LeaderboardScope, LeaderboardSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60


def build_leaderboard_key(metric: LeaderboardMetric, scope: LeaderboardScope, family_id: int | None = None) -> str:
    """Build the Redis cache key for one board."""
    if scope == LeaderboardScope.FAMILY:
        return f"leaderboard:family:{family_id}:{metric.value}"
    return f"leaderboard:global:{metric.value}"


def display_name(user_id: int, username: str | None) -> str:
    return username or f"user-{user_id}"


async def build_rows(
    db: AsyncSession,
    metric: LeaderboardMetric,
    scope: LeaderboardScope,
    family_id: int | None = None,
) -> list[tuple[int, str, int]]:
    """Full ordered board as (user_id, username, value)."""
    column = getattr(UserProgress, metric.value)
    stmt = select(UserProgress.user_id, column, Member.username)
    if scope == LeaderboardScope.FAMILY:
        stmt = stmt.join(Member, Member.user_id == UserProgress.user_id).where(Member.family_id == family_id)
    else:
        stmt = stmt.outerjoin(Member, Member.user_id == UserProgress.user_id)
    stmt = stmt.order_by(column.desc(), UserProgress.user_id.asc())

    result = await db.execute(stmt)
    return [(int(uid), display_name(uid, username), int(value)) for uid, value, username in result]


async def refresh(
    db: AsyncSession,
    redis: Redis | None,
    metric: LeaderboardMetric,
    scope: LeaderboardScope = LeaderboardScope.GLOBAL,
    family_id: int | None = None,
    ttl: int = DEFAULT_TTL_SECONDS,
) -> tuple[list[tuple[int, str, int]], datetime]:
    """Rebuild one board from the database and re-cache it."""
    rows = await build_rows(db, metric, scope, family_id)
    generated_at = datetime.now(timezone.utc)
    if redis is not None:
        payload = json.dumps({"generated_at": generated_at.isoformat(), "rows": rows})
        try:
            await redis.set(build_leaderboard_key(metric, scope, family_id), payload, ex=max(ttl, 1))
        except Exception:
            logger.warning("Failed to cache leaderboard %s/%s", scope.value, metric.value, exc_info=True)
    return rows, generated_at


async def _cached(
    redis: Redis | None, key: str
) -> tuple[list[tuple[int, str, int]], datetime] | None:
    if redis is None:
        return None
    try:
        raw = await redis.get(key)
    except Exception:
        logger.warning("Leaderboard cache read failed for %s", key, exc_info=True)
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw)
        rows = [(int(uid), str(name), int(value)) for uid, name, value in data["rows"]]
        return rows, datetime.fromisoformat(data["generated_at"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Discarding malformed leaderboard cache entry %s", key)
        return None


async def rank(
    db: AsyncSession,
    redis: Redis | None,
    metric: LeaderboardMetric,
    scope: LeaderboardScope = LeaderboardScope.GLOBAL,
    family_id: int | None = None,
    page: int = 1,
    per_page: int = 50,
    *,
    ttl: int = DEFAULT_TTL_SECONDS,
    max_per_page: int = 200,
) -> LeaderboardSnapshot:
    """One page of a leaderboard, served from cache when fresh."""
    if scope == LeaderboardScope.FAMILY and family_id is None:
        raise ValidationError("Family leaderboard needs a family_id")
    page = max(page, 1)
    per_page = min(max(per_page, 1), max_per_page)

    cached = await _cached(redis, build_leaderboard_key(metric, scope, family_id))
    if cached is None:
        rows, generated_at = await refresh(db, redis, metric, scope, family_id, ttl)
    else:
        rows, generated_at = cached

    start = (page - 1) * per_page
    entries = [
        LeaderboardEntry(rank=start + offset + 1, user_id=uid, username=name, value=value)
        for offset, (uid, name, value) in enumerate(rows[start:start + per_page])
    ]
    return LeaderboardSnapshot(
        scope=scope,
        metric=metric,
        family_id=family_id if scope == LeaderboardScope.FAMILY else None,
        entries=entries,
        total=len(rows),
        page=page,
        per_page=per_page,
        generated_at=generated_at,
    )


async def family_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(select(Member.family_id).where(Member.family_id.isnot(None)).distinct())
    return sorted(int(fid) for fid in result.scalars())
