"""Outbound event publishing over Redis pub/sub.

Delivery is best effort: the ledger is already committed when these go
out, so a failed publish is logged and dropped.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

logger = logging.getLogger(__name__)

POINTS_AWARDED_CHANNEL = "pubsub:points_awarded"
ACHIEVEMENT_UNLOCKED_CHANNEL = "pubsub:achievement_unlocked"


async def publish(redis: object, channel: str, event: BaseModel) -> bool:
    """Publish one event. Returns False when skipped or failed."""
    if redis is None:
        return False
    try:
        await redis.publish(channel, event.model_dump_json())  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to publish to %s", channel, exc_info=True)
        return False
    return True
