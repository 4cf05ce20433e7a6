"""Shared Redis client for pub/sub, the leaderboard cache and event streams."""

from collections.abc import Iterable

import redis.asyncio as redis

from ttg.config import Settings

_client: redis.Redis | None = None


async def init_redis(settings: Settings) -> redis.Redis:
    """Create the process-wide client.

    Responses are decoded to ``str``: stream fields, cached leaderboards and
    pub/sub payloads are all JSON text.
    """
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.redis_max_connections,
        health_check_interval=30,
        client_name=settings.stream_consumer_name,
    )
    return _client


async def ensure_consumer_groups(client: redis.Redis, streams: Iterable[str], group: str) -> int:
    """Create ``group`` on every stream, creating missing streams too.

    Returns how many groups were new. An existing group is left as it is.
    """
    created = 0
    for stream in streams:
        try:
            await client.xgroup_create(stream, group, id="0", mkstream=True)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        else:
            created += 1
    return created


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client
