"""Achievement, badge and challenge catalog.

Definitions are immutable and loaded once per process, either from a JSON
file (``Settings.catalog_path``) or from the seed data below. The JSON file
has the same shape as the seed: ``{"achievements": [...], "badges": [...],
"challenges": [...]}``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar

from ttg.errors import ValidationError
from ttg.gamification.criteria import Predicate, parse
from ttg.gamification.progression import TIER_ORDER

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class UnlockDefinition:
    """Shared shape of achievements and badges."""

    kind: ClassVar[str] = "unlock"

    id: int
    name: str
    description: str
    point_value: int
    category: str
    tier: str
    criteria: Any = field(default_factory=dict)
    difficulty: str = "medium"

    @property
    def awarded_by_criteria(self) -> bool:
        return bool(self.criteria)

    @cached_property
    def predicate(self) -> Predicate:
        """Parsed criteria. Raises CriteriaEvaluationError on every access while malformed."""
        return parse(self.criteria, self.id)


@dataclass(frozen=True, eq=False)
class AchievementDefinition(UnlockDefinition):
    kind: ClassVar[str] = "achievement"


@dataclass(frozen=True, eq=False)
class BadgeDefinition(UnlockDefinition):
    kind: ClassVar[str] = "badge"

    rarity: str = "common"


@dataclass(frozen=True)
class ChallengeDefinition:
    id: int
    name: str
    activity_type: str
    target_count: int
    point_reward: int
    start_date: datetime
    end_date: datetime
    description: str = ""
    reward_badge_id: int | None = None

    def is_active(self, at: datetime) -> bool:
        return self.start_date <= at <= self.end_date


@dataclass(frozen=True)
class Catalog:
    achievements: Mapping[int, AchievementDefinition]
    badges: Mapping[int, BadgeDefinition]
    challenges: Mapping[int, ChallengeDefinition]

    def unlockables(self) -> Iterator[UnlockDefinition]:
        """Achievements first, then badges, each in id order."""
        yield from (self.achievements[k] for k in sorted(self.achievements))
        yield from (self.badges[k] for k in sorted(self.badges))


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Progress
    {
        "id": 1,
        "name": "First Steps",
        "description": "Complete your very first task",
        "category": "progress",
        "tier": "bronze",
        "point_value": 10,
        "difficulty": "low",
        "criteria": {"type": "count", "stat": "tasks_completed", "op": ">=", "value": 1},
    },
    {
        "id": 2,
        "name": "Task Starter",
        "description": "Complete 5 tasks",
        "category": "progress",
        "tier": "bronze",
        "point_value": 25,
        "criteria": {"type": "count", "stat": "tasks_completed", "op": ">=", "value": 5},
    },
    {
        "id": 3,
        "name": "Getting Started",
        "description": "Complete 10 tasks",
        "category": "progress",
        "tier": "bronze",
        "point_value": 50,
        "criteria": {"type": "count", "stat": "tasks_completed", "op": ">=", "value": 10},
    },
    {
        "id": 4,
        "name": "Task Destroyer",
        "description": "Complete 20 tasks total",
        "category": "progress",
        "tier": "silver",
        "point_value": 100,
        "difficulty": "high",
        "criteria": {"type": "count", "stat": "tasks_completed", "op": ">=", "value": 20},
    },
    # Creation and organization
    {
        "id": 5,
        "name": "Creator",
        "description": "Create your first task",
        "category": "creation",
        "tier": "bronze",
        "point_value": 15,
        "difficulty": "low",
        "criteria": {"type": "count", "stat": "task_created", "op": ">=", "value": 1},
    },
    {
        "id": 6,
        "name": "Organizer",
        "description": "Create your first category",
        "category": "organization",
        "tier": "bronze",
        "point_value": 10,
        "difficulty": "low",
        "criteria": {"type": "count", "stat": "category_created", "op": ">=", "value": 1},
    },
    {
        "id": 7,
        "name": "Category Creator",
        "description": "Create 5 different categories",
        "category": "organization",
        "tier": "silver",
        "point_value": 50,
        "criteria": {"type": "count", "stat": "category_created", "op": ">=", "value": 5},
    },
    {
        "id": 8,
        "name": "Template Master",
        "description": "Use task templates 10 times",
        "category": "efficiency",
        "tier": "silver",
        "point_value": 50,
        "criteria": {"type": "count", "stat": "template_used", "op": ">=", "value": 10},
    },
    # Time management
    {
        "id": 9,
        "name": "Early Bird",
        "description": "Complete a task before 9 AM",
        "category": "time_management",
        "tier": "bronze",
        "point_value": 20,
        "criteria": {"type": "count", "stat": "morning_completions", "op": ">=", "value": 1},
    },
    {
        "id": 10,
        "name": "Night Owl",
        "description": "Complete a task after 10 PM",
        "category": "time_management",
        "tier": "bronze",
        "point_value": 15,
        "criteria": {"type": "count", "stat": "night_completions", "op": ">=", "value": 1},
    },
    {
        "id": 11,
        "name": "Weekend Warrior",
        "description": "Complete 5 tasks on weekends",
        "category": "dedication",
        "tier": "bronze",
        "point_value": 30,
        "criteria": {"type": "count", "stat": "weekend_completions", "op": ">=", "value": 5},
    },
    {
        "id": 12,
        "name": "On Time",
        "description": "Complete 5 tasks before their due date",
        "category": "punctuality",
        "tier": "bronze",
        "point_value": 40,
        "criteria": {"type": "count", "stat": "on_time_completions", "op": ">=", "value": 5},
    },
    # Consistency
    {
        "id": 13,
        "name": "Streak Starter",
        "description": "Be active 3 days in a row",
        "category": "consistency",
        "tier": "bronze",
        "point_value": 30,
        "criteria": {"type": "count", "stat": "current_streak", "op": ">=", "value": 3},
    },
    {
        "id": 14,
        "name": "First Week",
        "description": "Be active 7 days in a row",
        "category": "consistency",
        "tier": "silver",
        "point_value": 70,
        "criteria": {"type": "count", "stat": "longest_streak", "op": ">=", "value": 7},
    },
    # Family
    {
        "id": 15,
        "name": "Helpful",
        "description": "Complete 3 family tasks",
        "category": "collaboration",
        "tier": "bronze",
        "point_value": 35,
        "criteria": {"type": "count", "stat": "family_task_completed", "op": ">=", "value": 3},
    },
    # Focus
    {
        "id": 16,
        "name": "Focused",
        "description": "Complete your first focus session",
        "category": "focus",
        "tier": "bronze",
        "point_value": 25,
        "difficulty": "low",
        "criteria": {"type": "count", "stat": "focus_session", "op": ">=", "value": 1},
    },
    {
        "id": 17,
        "name": "Zen Master",
        "description": "Complete 5 focus sessions totalling at least two hours",
        "category": "focus",
        "tier": "silver",
        "point_value": 75,
        "difficulty": "high",
        "criteria": {
            "type": "all",
            "predicates": [
                {"type": "count", "stat": "focus_session", "op": ">=", "value": 5},
                {"type": "count", "stat": "focus_minutes", "op": ">=", "value": 120},
            ],
        },
    },
    # Priority
    {
        "id": 18,
        "name": "Priority Pro",
        "description": "Complete 10 high- or critical-priority tasks of either kind",
        "category": "priority",
        "tier": "gold",
        "point_value": 75,
        "difficulty": "high",
        "criteria": {
            "type": "any",
            "predicates": [
                {"type": "count", "stat": "priority:high", "op": ">=", "value": 10},
                {"type": "count", "stat": "priority:critical", "op": ">=", "value": 10},
            ],
        },
    },
]

BADGE_SEED_DATA: list[dict] = [
    {
        "id": 101,
        "name": "Scholar",
        "description": "Complete 20 learning tasks",
        "category": "learning",
        "tier": "bronze",
        "rarity": "common",
        "point_value": 100,
        "criteria": {"type": "category", "category": "learning", "op": ">=", "value": 20},
    },
    {
        "id": 102,
        "name": "Early Achiever",
        "description": "Complete 15 tasks at least a day early",
        "category": "punctuality",
        "tier": "bronze",
        "rarity": "common",
        "point_value": 100,
        "criteria": {"type": "count", "stat": "early_completions", "op": ">=", "value": 15},
    },
    {
        "id": 103,
        "name": "Family Champion",
        "description": "Complete 10 family tasks",
        "category": "family",
        "tier": "bronze",
        "rarity": "common",
        "point_value": 100,
        "criteria": {"type": "count", "stat": "family_task_completed", "op": ">=", "value": 10},
    },
    {
        "id": 104,
        "name": "Week Warrior",
        "description": "7 day activity streak",
        "category": "streak",
        "tier": "bronze",
        "rarity": "common",
        "point_value": 100,
        "criteria": {"type": "count", "stat": "longest_streak", "op": ">=", "value": 7},
    },
    {
        "id": 105,
        "name": "Monthly Master",
        "description": "30 day activity streak",
        "category": "streak",
        "tier": "silver",
        "rarity": "rare",
        "point_value": 300,
        "criteria": {"type": "count", "stat": "longest_streak", "op": ">=", "value": 30},
    },
    {
        "id": 106,
        "name": "Centurion",
        "description": "100 day activity streak",
        "category": "streak",
        "tier": "gold",
        "rarity": "epic",
        "point_value": 1000,
        "criteria": {"type": "count", "stat": "longest_streak", "op": ">=", "value": 100},
    },
    # Empty criteria: only ever awarded through a challenge reward.
    {
        "id": 150,
        "name": "Daily Dynamo",
        "description": "Won the Daily Dynamo challenge",
        "category": "challenge",
        "tier": "bronze",
        "rarity": "rare",
        "point_value": 50,
        "criteria": {},
    },
]

# Seed challenges carry no dates; they run for the calendar year the catalog is loaded in.
CHALLENGE_SEED_DATA: list[dict] = [
    {
        "id": 1,
        "name": "Daily Dynamo",
        "description": "Complete 5 tasks",
        "activity_type": "task_completed",
        "target_count": 5,
        "point_reward": 50,
        "reward_badge_id": 150,
    },
    {
        "id": 2,
        "name": "Focus Warrior",
        "description": "Complete 2 focus sessions",
        "activity_type": "focus_session",
        "target_count": 2,
        "point_reward": 80,
    },
    {
        "id": 3,
        "name": "Social Butterfly",
        "description": "Complete 3 family tasks",
        "activity_type": "family_task_completed",
        "target_count": 3,
        "point_reward": 85,
    },
    {
        "id": 4,
        "name": "Template Tinkerer",
        "description": "Use 3 task templates",
        "activity_type": "template_used",
        "target_count": 3,
        "point_reward": 40,
    },
]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _as_datetime(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(f"Bad {field_name}: {value!r}") from e
    else:
        raise ValidationError(f"Bad {field_name}: {value!r}")
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _criteria(raw: Any) -> Any:
    # Anything that is not an object is kept as-is and fails at evaluation.
    if raw is None:
        return MappingProxyType({})
    if isinstance(raw, Mapping):
        return MappingProxyType(dict(raw))
    return raw


def _unlock_kwargs(raw: Mapping[str, Any]) -> dict[str, Any]:
    try:
        kwargs = {
            "id": int(raw["id"]),
            "name": str(raw["name"]),
            "description": str(raw.get("description", "")),
            "point_value": int(raw.get("point_value", 0)),
            "category": str(raw.get("category", "")),
            "tier": str(raw.get("tier", "bronze")).lower(),
            "criteria": _criteria(raw.get("criteria")),
            "difficulty": str(raw.get("difficulty", "medium")).lower(),
        }
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Bad catalog entry {raw!r}: {e}") from e
    if kwargs["tier"] not in TIER_ORDER:
        raise ValidationError(f"Unknown tier {kwargs['tier']!r} on definition {kwargs['id']}")
    if kwargs["point_value"] < 0:
        raise ValidationError(f"Negative point value on definition {kwargs['id']}")
    return kwargs


def _challenge(raw: Mapping[str, Any]) -> ChallengeDefinition:
    try:
        challenge = ChallengeDefinition(
            id=int(raw["id"]),
            name=str(raw["name"]),
            description=str(raw.get("description", "")),
            activity_type=str(raw["activity_type"]),
            target_count=int(raw["target_count"]),
            point_reward=int(raw.get("point_reward", 0)),
            reward_badge_id=int(raw["reward_badge_id"]) if raw.get("reward_badge_id") is not None else None,
            start_date=_as_datetime(raw["start_date"], "start_date"),
            end_date=_as_datetime(raw["end_date"], "end_date"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Bad challenge entry {raw!r}: {e}") from e
    if challenge.target_count < 1:
        raise ValidationError(f"Challenge {challenge.id} needs a positive target_count")
    if challenge.end_date < challenge.start_date:
        raise ValidationError(f"Challenge {challenge.id} ends before it starts")
    return challenge


def catalog_from_dict(data: Mapping[str, Any]) -> Catalog:
    """Build a catalog from plain data. Criteria are parsed lazily, not here."""
    achievements = {}
    for raw in data.get("achievements", []):
        definition = AchievementDefinition(**_unlock_kwargs(raw))
        achievements[definition.id] = definition

    badges = {}
    for raw in data.get("badges", []):
        kwargs = _unlock_kwargs(raw)
        definition = BadgeDefinition(**kwargs, rarity=str(raw.get("rarity", "common")).lower())
        badges[definition.id] = definition

    challenges = {}
    for raw in data.get("challenges", []):
        challenge = _challenge(raw)
        if challenge.reward_badge_id is not None and challenge.reward_badge_id not in badges:
            raise ValidationError(
                f"Challenge {challenge.id} rewards unknown badge {challenge.reward_badge_id}"
            )
        challenges[challenge.id] = challenge

    return Catalog(
        achievements=MappingProxyType(achievements),
        badges=MappingProxyType(badges),
        challenges=MappingProxyType(challenges),
    )


def _seed_challenges(now: datetime) -> list[dict]:
    start = datetime(now.year, 1, 1, tzinfo=timezone.utc)
    end = datetime(now.year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return [{"start_date": start, "end_date": end, **raw} for raw in CHALLENGE_SEED_DATA]


def default_catalog(now: datetime | None = None) -> Catalog:
    now = now or datetime.now(timezone.utc)
    return catalog_from_dict({
        "achievements": ACHIEVEMENT_SEED_DATA,
        "badges": BADGE_SEED_DATA,
        "challenges": _seed_challenges(now),
    })


def load_catalog(path: str | Path | None = None) -> Catalog:
    """Load the catalog from a JSON file, or the seed data when no path is given."""
    if path is None:
        catalog = default_catalog()
        source = "seed"
    else:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"Cannot read catalog {path}: {e}") from e
        catalog = catalog_from_dict(data)
        source = str(path)

    logger.info(
        "Catalog loaded from %s: %d achievements, %d badges, %d challenges",
        source, len(catalog.achievements), len(catalog.badges), len(catalog.challenges),
    )
    return catalog
