"""Inbound and outbound event models.

Inbound events come from the task tracker (task completion, focus sessions,
reward redemptions). Outbound events are returned to the caller and
published on Redis pub/sub for the notification service.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ttg.errors import ValidationError


class ActionType(str, Enum):
    """Action types with a base-point entry in the default scoring table."""

    TASK_COMPLETED = "task_completed"
    TASK_CREATED = "task_created"
    FOCUS_SESSION = "focus_session"
    FAMILY_TASK_COMPLETED = "family_task_completed"
    TEMPLATE_USED = "template_used"
    BOARD_COLUMN_CLEARED = "board_column_cleared"
    CATEGORY_CREATED = "category_created"
    DAILY_LOGIN = "daily_login"


class TransactionType(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    BONUS = "bonus"
    CHALLENGE_REWARD = "challenge-reward"


class LeaderboardMetric(str, Enum):
    CURRENT_POINTS = "current_points"
    TOTAL_POINTS_EARNED = "total_points_earned"
    CURRENT_STREAK = "current_streak"
    LONGEST_STREAK = "longest_streak"


class LeaderboardScope(str, Enum):
    GLOBAL = "global"
    FAMILY = "family"


class SuggestionType(str, Enum):
    LOGIN = "login"
    ACHIEVEMENT = "achievement"
    REWARD = "reward"
    CHALLENGE = "challenge"


# --- Inbound ---

# Upper bound for a single focus session.
MAX_SESSION_MINUTES = 24 * 60


class ActionCompleted(BaseModel):
    user_id: int = Field(gt=0)
    action_type: str = Field(min_length=1, max_length=64)
    completed_at: datetime
    correlation_id: str = Field(min_length=1, max_length=200)
    difficulty: str | None = None
    priority: str | None = None
    due_date: datetime | None = None
    duration_minutes: float | None = Field(default=None, ge=0, le=MAX_SESSION_MINUTES, allow_inf_nan=False)
    is_collaborative: bool = False
    participant_count: int | None = Field(default=None, ge=1)
    family_id: int | None = None
    category: str | None = Field(default=None, max_length=64)
    source_id: str | None = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _focus_needs_duration(self) -> ActionCompleted:
        if self.action_type == ActionType.FOCUS_SESSION.value and self.duration_minutes is None:
            raise ValueError("focus_session requires duration_minutes")
        return self


class RewardRedemption(BaseModel):
    user_id: int = Field(gt=0)
    reward_id: int
    point_cost: int = Field(gt=0)
    correlation_id: str = Field(min_length=1, max_length=200)
    minimum_level: int | None = Field(default=None, ge=1)
    reward_name: str | None = None


class RewardOffer(BaseModel):
    """A reward from the tracker's catalog, as offered to one user."""

    reward_id: int
    name: str
    point_cost: int = Field(gt=0)
    minimum_level: int = Field(default=1, ge=1)
    is_active: bool = True


def parse_action(raw: dict[str, Any]) -> ActionCompleted:
    """Validate a raw inbound payload, mapping pydantic errors to ValidationError."""
    try:
        return ActionCompleted.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed ActionCompleted: {e.errors(include_url=False)}") from e


def parse_redemption(raw: dict[str, Any]) -> RewardRedemption:
    """Validate a raw redemption payload, mapping pydantic errors to ValidationError."""
    try:
        return RewardRedemption.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed RewardRedemption: {e.errors(include_url=False)}") from e


# --- Outbound ---


class PointsAwarded(BaseModel):
    user_id: int
    amount: int
    reason: str
    new_balance: int
    transaction_type: TransactionType = TransactionType.EARN


class AchievementUnlocked(BaseModel):
    user_id: int
    achievement_id: int
    bonus_awarded: int
    kind: str = "achievement"
    name: str = ""


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    username: str
    value: int


class LeaderboardSnapshot(BaseModel):
    scope: LeaderboardScope
    metric: LeaderboardMetric
    family_id: int | None = None
    entries: list[LeaderboardEntry]
    total: int
    page: int
    per_page: int
    generated_at: datetime


class GamificationStats(BaseModel):
    user_id: int
    current_points: int
    total_points_earned: int
    total_points_spent: int
    level: int
    next_level_threshold: int
    tier: str
    current_streak: int
    longest_streak: int
    achievements_unlocked: int
    badges_earned: int
    active_days_7: int
    active_days_30: int
    consistency_score: float
    weekly_consistency_multiplier: float
    monthly_consistency_multiplier: float


class LoginStatus(BaseModel):
    user_id: int
    claimed_today: bool
    current_streak: int
    bonus_if_claimed: int


class RedeemedReward(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    reward_id: int
    reward_name: str
    point_cost: int
    redeemed_at: datetime
    is_used: bool
    used_at: datetime | None = None


class Suggestion(BaseModel):
    """Next step the user could take, with the points it would bring."""

    type: SuggestionType
    title: str
    description: str
    points: int = 0
    target_id: int | None = None
