"""Gamification arq worker: consumes task-tracker events from Redis Streams.

Streams carry one JSON document per message under the ``data`` field.
Messages are acked once handled, including ones rejected as malformed.
An outcome of ``points_pending`` is left unacked; ``replay_pending`` picks
those up again from this consumer's pending list.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis
from arq import cron

from ttg.config import get_settings
from ttg.database import close_db, get_session_factory, init_db
from ttg.errors import ValidationError
from ttg.gamification import leaderboard
from ttg.gamification.engine import ActionOutcome, GamificationEngine
from ttg.log_setup import setup_logging
from ttg.redis_client import close_redis, ensure_consumer_groups, get_redis, init_redis
from ttg.schemas import LeaderboardMetric, LeaderboardScope

logger = logging.getLogger(__name__)

ACTION_STREAM = "tasks:action_completed"
REDEMPTION_STREAM = "tasks:reward_redeemed"
LOGIN_STREAM = "tasks:daily_login"
MEMBER_STREAM = "tasks:member_updated"

STREAMS = [ACTION_STREAM, REDEMPTION_STREAM, LOGIN_STREAM, MEMBER_STREAM]


def parse_message(raw_data: dict[str, Any]) -> dict[str, Any]:
    """Decode one stream entry: JSON under ``data``, else the flat fields."""
    data_str = raw_data.get("data")
    if isinstance(data_str, (bytes, bytearray)):
        data_str = data_str.decode()
    if isinstance(data_str, str):
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data
    return {
        (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
        for k, v in raw_data.items()
        if k not in ("data", b"data")
    }


async def dispatch(engine: GamificationEngine, stream: str, data: dict[str, Any]) -> ActionOutcome | None:
    """Route one decoded event to the engine. Returns None for non-point events."""
    if stream == ACTION_STREAM:
        return await engine.handle_action(data)
    if stream == REDEMPTION_STREAM:
        return await engine.redeem(data)
    if stream == LOGIN_STREAM:
        try:
            user_id = int(data["user_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed login event: {data!r}") from e
        return await engine.claim_daily_login(user_id)
    if stream == MEMBER_STREAM:
        try:
            family_id = data.get("family_id")
            await engine.upsert_member(
                int(data["user_id"]),
                str(data["username"]),
                int(family_id) if family_id not in (None, "") else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed member event: {data!r}") from e
        return None
    raise ValidationError(f"Unknown stream {stream}")


async def process_batch(
    engine: GamificationEngine,
    redis_client: aioredis.Redis,
    events: list,
    group: str,
) -> int:
    """Handle one XREADGROUP reply. Returns the number of messages acked."""
    acked = 0
    for stream_name, messages in events:
        stream_str = stream_name if isinstance(stream_name, str) else stream_name.decode()

        for msg_id, raw_data in messages:
            if raw_data is None:
                # Trimmed from the stream while pending; nothing left to replay.
                await redis_client.xack(stream_str, group, msg_id)
                acked += 1
                continue
            try:
                outcome = await dispatch(engine, stream_str, parse_message(raw_data))
            except ValidationError as e:
                logger.warning("Rejected %s from %s: %s", msg_id, stream_str, e)
            except Exception:
                logger.exception("Failed to process %s from %s", msg_id, stream_str)
                continue
            else:
                if outcome is not None and outcome.pending:
                    logger.warning("Points pending for %s from %s, leaving unacked", msg_id, stream_str)
                    continue

            await redis_client.xack(stream_str, group, msg_id)
            acked += 1
    return acked


async def gamification_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize logging, Redis, DB and the engine on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await init_redis(settings)
    redis_client = get_redis()
    await ensure_consumer_groups(redis_client, STREAMS, settings.stream_consumer_group)

    ctx["redis"] = redis_client
    ctx["engine"] = GamificationEngine(get_session_factory(), redis=redis_client, settings=settings)
    logger.info("Gamification worker started")


async def gamification_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_redis()
    await close_db()
    logger.info("Gamification worker shut down")


async def consume_gamification_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop: reads task-tracker events and feeds the engine."""
    settings = get_settings()
    redis_client: aioredis.Redis = ctx["redis"]
    engine: GamificationEngine = ctx["engine"]
    streams = {s: ">" for s in STREAMS}

    while True:
        try:
            events = await redis_client.xreadgroup(
                groupname=settings.stream_consumer_group,
                consumername=settings.stream_consumer_name,
                streams=streams,
                count=settings.stream_batch_size,
                block=settings.stream_block_ms,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        if events:
            await process_batch(engine, redis_client, events, settings.stream_consumer_group)


async def replay_pending(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: retry this consumer's delivered-but-unacked messages."""
    settings = get_settings()
    redis_client: aioredis.Redis = ctx["redis"]
    events = await redis_client.xreadgroup(
        groupname=settings.stream_consumer_group,
        consumername=settings.stream_consumer_name,
        streams={s: "0" for s in STREAMS},
        count=settings.stream_batch_size,
    )
    if not events:
        return 0
    acked = await process_batch(ctx["engine"], redis_client, events, settings.stream_consumer_group)
    if acked:
        logger.info("Replayed %d pending messages", acked)
    return acked


async def reconcile_sweep(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: ledger reconciliation and deferred unlocks."""
    engine: GamificationEngine = ctx["engine"]
    result = await engine.sweep()
    return result.users_checked


async def refresh_leaderboards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: rebuild every cached board, global and per family."""
    settings = get_settings()
    engine: GamificationEngine = ctx["engine"]
    refreshed = 0
    async with engine.session_factory() as db:
        families = await leaderboard.family_ids(db)
        for metric in LeaderboardMetric:
            await leaderboard.refresh(
                db, ctx["redis"], metric, LeaderboardScope.GLOBAL, ttl=settings.leaderboard_refresh_seconds
            )
            refreshed += 1
            for family_id in families:
                await leaderboard.refresh(
                    db, ctx["redis"], metric, LeaderboardScope.FAMILY, family_id,
                    ttl=settings.leaderboard_refresh_seconds,
                )
                refreshed += 1
    logger.info("Leaderboards refreshed: %d boards", refreshed)
    return refreshed


class GamificationWorkerSettings:
    """arq worker settings for the gamification consumer."""

    functions = [consume_gamification_events]
    cron_jobs = [
        cron(refresh_leaderboards, second={0}),
        cron(replay_pending, minute={2, 12, 22, 32, 42, 52}, second={30}),
        cron(reconcile_sweep, minute={5, 20, 35, 50}, second={0}),
    ]
    on_startup = gamification_startup
    on_shutdown = gamification_shutdown
    max_jobs = 4
    job_timeout = 0  # consume_gamification_events runs forever
    allow_abort_jobs = True
