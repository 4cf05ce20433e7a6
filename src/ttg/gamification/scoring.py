"""Deterministic scoring formula.

Multiplication order is fixed:

    base points for the action type
      x difficulty
      x priority
      x streak (current streak at the time of the action)
      x completion timing (early / late / time of day)
      x focus duration        (focus sessions only)
      x family collaboration  (collaborative actions only)
      x achievement tier      (achievement / badge unlock bonuses only)

The product is rounded half-up to an integer with a floor of 1 point, then
clamped to ``ScoringConfig.cap`` when one is configured. ``score`` has no
side effects and reads nothing but its arguments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping

from ttg.errors import ValidationError
from ttg.gamification import multipliers
from ttg.gamification.progression import TIER_THRESHOLDS
from ttg.schemas import ActionCompleted, ActionType

DEFAULT_BASE_POINTS: Mapping[str, int] = MappingProxyType({
    ActionType.TASK_COMPLETED.value: 10,
    ActionType.TASK_CREATED.value: 2,
    ActionType.FOCUS_SESSION.value: 15,
    ActionType.FAMILY_TASK_COMPLETED.value: 15,
    ActionType.TEMPLATE_USED.value: 5,
    ActionType.BOARD_COLUMN_CLEARED.value: 20,
    ActionType.CATEGORY_CREATED.value: 3,
    ActionType.DAILY_LOGIN.value: 10,
})

ACHIEVEMENT_UNLOCK = "achievement_unlock"

RAW_PRECISION = Decimal("0.000001")


@dataclass(frozen=True)
class ScoringConfig:
    """Read-only tables handed to the scoring engine and the aggregator."""

    base_points: Mapping[str, int] = field(default_factory=lambda: DEFAULT_BASE_POINTS)
    tier_thresholds: Mapping[str, int] = field(default_factory=lambda: MappingProxyType(dict(TIER_THRESHOLDS)))
    tier_multipliers: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(multipliers.TIER_MULTIPLIERS))
    )
    cap: int | None = None

    def knows(self, action_type: str) -> bool:
        return action_type in self.base_points


DEFAULT_SCORING_CONFIG = ScoringConfig()


@dataclass(frozen=True)
class ScoreDescriptor:
    """Everything the formula looks at. Build one per action or unlock."""

    action_type: str
    base_points: int | None = None
    difficulty: str | None = None
    priority: str | None = None
    streak_days: int = 0
    completed_at: datetime | None = None
    due_date: datetime | None = None
    duration_minutes: float | None = None
    is_collaborative: bool = False
    participant_count: int | None = None
    achievement_tier: str | None = None


@dataclass(frozen=True)
class ScoreBreakdown:
    base: int
    factors: tuple[tuple[str, float], ...]
    raw: float
    points: int


def explain(descriptor: ScoreDescriptor, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> ScoreBreakdown:
    """Apply the formula and return every factor that went into it."""
    if descriptor.base_points is not None:
        base = descriptor.base_points
    elif config.knows(descriptor.action_type):
        base = config.base_points[descriptor.action_type]
    else:
        raise ValidationError(f"No base points for action type {descriptor.action_type!r}")
    if base < 0:
        raise ValidationError("Base points cannot be negative")

    factors: list[tuple[str, float]] = [
        ("difficulty", multipliers.difficulty_multiplier(descriptor.difficulty)),
        ("priority", multipliers.priority_multiplier(descriptor.priority)),
        ("streak", multipliers.streak_multiplier(descriptor.streak_days)),
    ]
    if descriptor.completed_at is not None:
        factors.append(
            ("timing", multipliers.completion_timing_multiplier(descriptor.completed_at, descriptor.due_date))
        )
    if descriptor.action_type == ActionType.FOCUS_SESSION.value:
        factors.append(("focus", multipliers.focus_multiplier(descriptor.duration_minutes)))
    if descriptor.is_collaborative:
        factors.append(("collaboration", multipliers.collaboration_multiplier(True, descriptor.participant_count)))
    if descriptor.achievement_tier is not None:
        tier = descriptor.achievement_tier.strip().lower()
        factors.append(("tier", config.tier_multipliers.get(tier, 1.0)))

    product = Decimal(base)
    for _name, value in factors:
        product *= Decimal(str(value))
    # Table values are short decimals; trim float noise from composed factors.
    product = product.quantize(RAW_PRECISION)
    raw = float(product)

    points = max(1, int(product.quantize(Decimal(1), rounding=ROUND_HALF_UP)))
    if config.cap is not None:
        points = min(points, config.cap)
    return ScoreBreakdown(base=base, factors=tuple(factors), raw=raw, points=points)


def score(descriptor: ScoreDescriptor, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> int:
    """Points for one action or unlock."""
    return explain(descriptor, config).points


def descriptor_for_action(action: ActionCompleted, streak_days: int) -> ScoreDescriptor:
    """Build the descriptor for an inbound action at the given streak length."""
    return ScoreDescriptor(
        action_type=action.action_type,
        difficulty=action.difficulty,
        priority=action.priority,
        streak_days=streak_days,
        completed_at=action.completed_at,
        due_date=action.due_date,
        duration_minutes=action.duration_minutes,
        is_collaborative=action.is_collaborative,
        participant_count=action.participant_count,
    )


def descriptor_for_unlock(point_value: int, tier: str) -> ScoreDescriptor:
    """Descriptor for an achievement or badge bonus: base value x tier only."""
    return ScoreDescriptor(
        action_type=ACHIEVEMENT_UNLOCK,
        base_points=point_value,
        achievement_tier=tier,
    )
