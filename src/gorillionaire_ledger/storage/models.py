"""SQLAlchemy models for persistent storage.

This module defines the database schema for user ledgers, the append-only
activity log, archived weekly leaderboards, referrals and quests.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UserLedgerModel(Base):
    """Per-address points balance and streak state.

    ``version`` is an optimistic-lock counter: SQLAlchemy adds it to every
    UPDATE's WHERE clause and raises ``StaleDataError`` when another
    transaction changed the row first.
    """

    __tablename__ = "user_ledgers"

    address: Mapped[str] = mapped_column(String(42), primary_key=True, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_last_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sign_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    discord_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    v2_access_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    v2_access_enabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_user_ledgers_points", "points"),
        Index("idx_user_ledgers_created_at", "created_at"),
    )


class ActivityModel(Base):
    """Append-only activity record. Rows are never updated or deleted."""

    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(
        String(42), ForeignKey("user_ledgers.address"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Correlation fields
    intent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, unique=True)
    signal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    referral_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    referred_user_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    original_trade_points: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quest_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usd_value: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_activities_address_date", "address", "date"),
        Index("idx_activities_date", "date"),
        Index("idx_activities_name", "name"),
    )


class WeeklyLeaderboardModel(Base):
    """Archived weekly leaderboard header. One row per ISO (year, week_number)."""

    __tablename__ = "weekly_leaderboards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    week_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    week_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_weekly_points: Mapped[int] = mapped_column(Integer, nullable=False)
    total_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("year", "week_number", name="uq_weekly_leaderboards_year_week"),
        Index("idx_weekly_leaderboards_week_start", "week_start"),
    )


class WeeklyLeaderboardEntryModel(Base):
    """Ranked participant within an archived week."""

    __tablename__ = "weekly_leaderboard_entries"

    leaderboard_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("weekly_leaderboards.id", ondelete="CASCADE"), primary_key=True
    )
    rank: Mapped[int] = mapped_column(Integer, primary_key=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    weekly_points: Mapped[int] = mapped_column(Integer, nullable=False)
    weekly_activities: Mapped[int] = mapped_column(Integer, nullable=False)
    total_referred: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_referral_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    winning_chances: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_weekly_leaderboard_entries_address", "address"),)


class WeeklyRaffleWinnerModel(Base):
    """Raffle winner drawn for an archived week, in draw order."""

    __tablename__ = "weekly_raffle_winners"

    leaderboard_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("weekly_leaderboards.id", ondelete="CASCADE"), primary_key=True
    )
    draw_order: Mapped[int] = mapped_column(Integer, primary_key=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    weekly_points: Mapped[int] = mapped_column(Integer, nullable=False)
    winning_chances: Mapped[float] = mapped_column(Float, nullable=False)
    prize_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("idx_weekly_raffle_winners_address", "address"),)


class ReferralModel(Base):
    """A referrer's code and running reward total."""

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    total_points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ReferredUserModel(Base):
    """A user who joined through a referral code. A user has at most one referrer."""

    __tablename__ = "referred_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("referrals.id", ondelete="CASCADE"), nullable=False
    )
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_referred_users_referral_joined", "referral_id", "joined_at"),)


class DailyQuestModel(Base):
    """Daily quest definition."""

    __tablename__ = "daily_quests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    image: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    quest_type: Mapped[str] = mapped_column(String(32), nullable=False)
    requirement: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_type: Mapped[str] = mapped_column(String(16), nullable=False, default="points")
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    quest_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_daily_quests_active_order", "is_active", "quest_order"),)


class UserDailyQuestModel(Base):
    """A user's progress on one daily quest for one UTC day."""

    __tablename__ = "user_daily_quests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("daily_quests.id", ondelete="CASCADE"), nullable=False
    )
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    quest_date: Mapped[date] = mapped_column(Date, nullable=False)
    quest_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_progress_update: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("address", "quest_id", "quest_date", name="uq_user_daily_quests_day"),
        Index("idx_user_daily_quests_address_date", "address", "quest_date", "quest_order"),
    )


class QuestModel(Base):
    """Lifetime quest definition."""

    __tablename__ = "quests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    image: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    quest_type: Mapped[str] = mapped_column(String(32), nullable=False)
    requirement: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_type: Mapped[str] = mapped_column(String(16), nullable=False, default="points")
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False)


class UserQuestModel(Base):
    """A user's completion and claim state for a lifetime quest."""

    __tablename__ = "user_quests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("quests.id", ondelete="CASCADE"), nullable=False
    )
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (UniqueConstraint("address", "quest_id", name="uq_user_quests_address_quest"),)
