"""ORM models for the gamification engine.

The ledger (``point_transactions``) is the source of truth. Every other
table except ``members`` is either derived from it or guards an
at-most-once transition with a UNIQUE constraint.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ttg.db.base import Base, BigIntPK


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class PointTransaction(Base):
    """Immutable, signed point transaction with idempotency key."""

    __tablename__ = "point_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(24), nullable=False)
    reason: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    source_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


class UserProgress(Base):
    """Denormalized progress snapshot, one row per user.

    ``version`` is the optimistic-concurrency counter: an UPDATE that was
    computed from a stale read matches zero rows and raises StaleDataError.
    """

    __tablename__ = "user_progress"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    current_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_points_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_points_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    next_level_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze", server_default="bronze")
    unlock_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}  # noqa: RUF012


class ActivityCounter(Base):
    """Per-user named counters read by achievement criteria."""

    __tablename__ = "activity_counters"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    stat: Mapped[str] = mapped_column(String(96), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Unlocks
# ---------------------------------------------------------------------------


class UserAchievement(Base):
    """At-most-once achievement unlock."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="user_achievements_user_id_achievement_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    achievement_id: Mapped[int] = mapped_column(Integer, nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserBadge(Base):
    """At-most-once badge award."""

    __tablename__ = "user_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="user_badges_user_id_badge_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    badge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_displayed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class UserChallenge(Base):
    """Enrollment and progress of one user in one time-boxed challenge."""

    __tablename__ = "user_challenges"
    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="user_challenges_user_id_challenge_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    current_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_reward_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reward_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Reward inventory
# ---------------------------------------------------------------------------


class UserReward(Base):
    """A redeemed reward, held until the user spends it.

    One row per ``spend`` ledger entry. ``is_used`` flips false->true once.
    """

    __tablename__ = "user_rewards"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    reward_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    point_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("point_transactions.id"), unique=True, nullable=False
    )
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Directory mirror
# ---------------------------------------------------------------------------


class Member(Base):
    """Username and family of a user, mirrored from the task tracker."""

    __tablename__ = "members"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    family_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
