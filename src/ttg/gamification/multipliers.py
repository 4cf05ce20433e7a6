"""Multiplier tables for the scoring formula.

Every lookup is total: unknown labels fall back to the neutral 1.0 and
numeric inputs outside the table clamp to the nearest bucket. Nothing in
here raises on odd input.
"""

from __future__ import annotations

from bisect import bisect_right
from datetime import datetime, timedelta

DIFFICULTY_MULTIPLIERS: dict[str, float] = {
    "low": 0.8,
    "medium": 1.0,
    "high": 1.5,
    "critical": 2.0,
    "expert": 2.5,
}

PRIORITY_MULTIPLIERS: dict[str, float] = {
    "low": 0.9,
    "medium": 1.0,
    "high": 1.5,
    "critical": 2.0,
}

# (lower bound, multiplier): a value v uses the last row whose bound <= v.
STREAK_BREAKPOINTS: list[tuple[int, float]] = [
    (0, 1.0),
    (3, 1.1),
    (7, 1.25),
    (14, 1.5),
    (30, 2.0),
    (60, 2.5),
    (100, 3.0),
    (180, 3.5),
    (365, 4.0),
]

FOCUS_BREAKPOINTS: list[tuple[int, float]] = [
    (0, 0.5),
    (15, 1.0),
    (30, 1.25),
    (60, 1.5),
    (90, 1.75),
    (120, 2.0),
]

WEEKLY_CONSISTENCY_BREAKPOINTS: list[tuple[float, float]] = [
    (0.0, 1.0),
    (0.5, 1.1),
    (0.7, 1.2),
    (0.85, 1.3),
    (1.0, 1.5),
]

MONTHLY_CONSISTENCY_BREAKPOINTS: list[tuple[float, float]] = [
    (0.0, 1.0),
    (0.5, 1.15),
    (0.75, 1.3),
    (0.9, 1.5),
]

TIER_MULTIPLIERS: dict[str, float] = {
    "bronze": 1.0,
    "silver": 2.0,
    "gold": 4.0,
    "platinum": 8.0,
    "diamond": 15.0,
    "onyx": 25.0,
}

EARLY_COMPLETION_BONUS = 1.2
LATE_COMPLETION_PENALTY = 0.7
EARLY_MORNING_BONUS = 1.15
LATE_NIGHT_BONUS = 1.10
EARLY_WINDOW = timedelta(hours=24)
EARLY_MORNING_BEFORE_HOUR = 9
LATE_NIGHT_FROM_HOUR = 22

COLLABORATION_BONUS: dict[int, float] = {2: 1.3, 3: 1.4, 4: 1.5}
COLLABORATION_BONUS_MAX = 1.6


def _lookup(breakpoints: list[tuple[float, float]], value: float) -> float:
    bounds = [b for b, _ in breakpoints]
    idx = bisect_right(bounds, value) - 1
    return breakpoints[max(idx, 0)][1]


def _label(value: str | None) -> str:
    return (value or "").strip().lower()


def difficulty_multiplier(difficulty: str | None) -> float:
    return DIFFICULTY_MULTIPLIERS.get(_label(difficulty), 1.0)


def priority_multiplier(priority: str | None) -> float:
    return PRIORITY_MULTIPLIERS.get(_label(priority), 1.0)


def streak_multiplier(streak_days: int) -> float:
    """Multiplier for a streak of ``streak_days`` consecutive days."""
    return _lookup(STREAK_BREAKPOINTS, streak_days)


def completion_timing_multiplier(completed_at: datetime, due_date: datetime | None = None) -> float:
    """Early/late bonus against the due date, then the time-of-day bonus.

    Early means finished at least 24 hours before the due date; late means
    after it. Both bonuses multiply.
    """
    multiplier = 1.0
    if due_date is not None:
        done, due = comparable_pair(completed_at, due_date)
        if done > due:
            multiplier *= LATE_COMPLETION_PENALTY
        elif due - done >= EARLY_WINDOW:
            multiplier *= EARLY_COMPLETION_BONUS

    if completed_at.hour < EARLY_MORNING_BEFORE_HOUR:
        multiplier *= EARLY_MORNING_BONUS
    elif completed_at.hour >= LATE_NIGHT_FROM_HOUR:
        multiplier *= LATE_NIGHT_BONUS
    return multiplier


def comparable_pair(a: datetime, b: datetime) -> tuple[datetime, datetime]:
    """Drop tzinfo when only one side is aware, so the two compare."""
    if (a.tzinfo is None) != (b.tzinfo is None):
        return a.replace(tzinfo=None), b.replace(tzinfo=None)
    return a, b


def focus_multiplier(duration_minutes: float | None) -> float:
    """Multiplier for a focus session of the given length."""
    return _lookup(FOCUS_BREAKPOINTS, duration_minutes or 0)


def collaboration_multiplier(is_collaborative: bool, participant_count: int | None = None) -> float:
    """Family-collaboration bonus: +30% for a pair up to +60% for five or more."""
    if not is_collaborative:
        return 1.0
    if participant_count is None or participant_count < 2:
        return COLLABORATION_BONUS[2]
    return COLLABORATION_BONUS.get(participant_count, COLLABORATION_BONUS_MAX)


def weekly_consistency_multiplier(ratio: float) -> float:
    """Bonus for the share of the last 7 days with activity."""
    return _lookup(WEEKLY_CONSISTENCY_BREAKPOINTS, min(max(ratio, 0.0), 1.0))


def monthly_consistency_multiplier(ratio: float) -> float:
    """Bonus for the share of the last 30 days with activity."""
    return _lookup(MONTHLY_CONSISTENCY_BREAKPOINTS, min(max(ratio, 0.0), 1.0))
