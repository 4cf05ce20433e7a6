"""Level curve and tier thresholds.

Both are driven by ``total_points_earned``, which never decreases, so level
and tier can only move forward.
"""

from __future__ import annotations

from dataclasses import dataclass

MAX_LEVEL = 100

TIER_ORDER: tuple[str, ...] = ("bronze", "silver", "gold", "platinum", "diamond", "onyx")

TIER_THRESHOLDS: dict[str, int] = {
    "bronze": 0,
    "silver": 750,
    "gold": 3000,
    "platinum": 10000,
    "diamond": 30000,
    "onyx": 100000,
}


def points_for_level(level: int) -> int:
    """Points needed to go from ``level`` to ``level + 1``: 100 * level^1.5."""
    return int(100 * level**1.5)


def _build_level_table() -> list[int]:
    cumulative = [0, 0]  # index = level; level 1 starts at 0
    for level in range(1, MAX_LEVEL):
        cumulative.append(cumulative[level] + points_for_level(level))
    return cumulative


# LEVEL_THRESHOLDS[n] = cumulative earned points at which level n starts.
LEVEL_THRESHOLDS: list[int] = _build_level_table()


@dataclass(frozen=True)
class LevelInfo:
    level: int
    next_level_threshold: int
    points_into_level: int
    points_for_level: int


def compute_level(total_earned: int) -> LevelInfo:
    """Compute level info from lifetime earned points."""
    level = 1
    for candidate in range(2, MAX_LEVEL + 1):
        if total_earned >= LEVEL_THRESHOLDS[candidate]:
            level = candidate
        else:
            break

    start = LEVEL_THRESHOLDS[level]
    if level == MAX_LEVEL:
        # At max level the threshold stays put; avoid a zero-width level.
        return LevelInfo(level, start, total_earned - start, 1)

    nxt = LEVEL_THRESHOLDS[level + 1]
    return LevelInfo(level, nxt, total_earned - start, nxt - start)


def tier_for_points(total_earned: int, thresholds: dict[str, int] | None = None) -> str:
    """Highest tier whose threshold ``total_earned`` has reached."""
    thresholds = thresholds or TIER_THRESHOLDS
    tier = TIER_ORDER[0]
    for name in TIER_ORDER:
        if total_earned >= thresholds.get(name, 0):
            tier = name
    return tier


def advance_tier(current: str, total_earned: int, thresholds: dict[str, int] | None = None) -> str:
    """Tier after earning; never moves backward."""
    candidate = tier_for_points(total_earned, thresholds)
    if current not in TIER_ORDER:
        return candidate
    return max(current, candidate, key=TIER_ORDER.index)
