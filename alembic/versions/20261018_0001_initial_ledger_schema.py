"""Initial schema for ledgers, activities, weekly leaderboards, referrals and quests.

Revision ID: 001_initial_ledger
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # User ledgers table
    op.create_table(
        "user_ledgers",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("streak", sa.Integer(), nullable=False),
        sa.Column("streak_last_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sign_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discord_username", sa.String(64), nullable=True),
        sa.Column("v2_access_code", sa.String(64), nullable=True),
        sa.Column("v2_access_enabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )
    op.create_index("idx_user_ledgers_points", "user_ledgers", ["points"])
    op.create_index("idx_user_ledgers_created_at", "user_ledgers", ["created_at"])

    # Activity log
    op.create_table(
        "activities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("intent_id", sa.String(64), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("signal_id", sa.String(64), nullable=True),
        sa.Column("referral_id", sa.Integer(), nullable=True),
        sa.Column("referred_user_address", sa.String(42), nullable=True),
        sa.Column("original_trade_points", sa.Integer(), nullable=True),
        sa.Column("quest_id", sa.Integer(), nullable=True),
        sa.Column("usd_value", sa.Numeric(20, 6), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["address"], ["user_ledgers.address"]),
        sa.UniqueConstraint("tx_hash"),
    )
    op.create_index("idx_activities_address_date", "activities", ["address", "date"])
    op.create_index("idx_activities_date", "activities", ["date"])
    op.create_index("idx_activities_name", "activities", ["name"])

    # Weekly leaderboard snapshots
    op.create_table(
        "weekly_leaderboards",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("week_number", sa.Integer(), nullable=False),
        sa.Column("week_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("week_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_weekly_points", sa.Integer(), nullable=False),
        sa.Column("total_participants", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("year", "week_number", name="uq_weekly_leaderboards_year_week"),
    )
    op.create_index("idx_weekly_leaderboards_week_start", "weekly_leaderboards", ["week_start"])

    op.create_table(
        "weekly_leaderboard_entries",
        sa.Column("leaderboard_id", sa.Integer(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("weekly_points", sa.Integer(), nullable=False),
        sa.Column("weekly_activities", sa.Integer(), nullable=False),
        sa.Column("total_referred", sa.Integer(), nullable=False),
        sa.Column("total_referral_points", sa.Integer(), nullable=False),
        sa.Column("winning_chances", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("leaderboard_id", "rank"),
        sa.ForeignKeyConstraint(["leaderboard_id"], ["weekly_leaderboards.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "idx_weekly_leaderboard_entries_address", "weekly_leaderboard_entries", ["address"]
    )

    op.create_table(
        "weekly_raffle_winners",
        sa.Column("leaderboard_id", sa.Integer(), nullable=False),
        sa.Column("draw_order", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("weekly_points", sa.Integer(), nullable=False),
        sa.Column("winning_chances", sa.Float(), nullable=False),
        sa.Column("prize_amount", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("leaderboard_id", "draw_order"),
        sa.ForeignKeyConstraint(["leaderboard_id"], ["weekly_leaderboards.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_weekly_raffle_winners_address", "weekly_raffle_winners", ["address"])

    # Referrals
    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("referrer_address", sa.String(42), nullable=False),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("total_points_earned", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("referrer_address"),
        sa.UniqueConstraint("code"),
    )

    op.create_table(
        "referred_users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("referral_id", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("points_earned", sa.Integer(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["referral_id"], ["referrals.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("address"),
    )
    op.create_index(
        "idx_referred_users_referral_joined", "referred_users", ["referral_id", "joined_at"]
    )

    # Daily quests
    op.create_table(
        "daily_quests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("image", sa.String(256), nullable=False),
        sa.Column("quest_type", sa.String(32), nullable=False),
        sa.Column("requirement", sa.Integer(), nullable=False),
        sa.Column("reward_type", sa.String(16), nullable=False),
        sa.Column("reward_amount", sa.Integer(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("quest_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_daily_quests_active_order", "daily_quests", ["is_active", "quest_order"])

    op.create_table(
        "user_daily_quests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("quest_id", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("quest_date", sa.Date(), nullable=False),
        sa.Column("quest_order", sa.Integer(), nullable=False),
        sa.Column("current_progress", sa.Float(), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_progress_update", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["quest_id"], ["daily_quests.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("address", "quest_id", "quest_date", name="uq_user_daily_quests_day"),
    )
    op.create_index(
        "idx_user_daily_quests_address_date",
        "user_daily_quests",
        ["address", "quest_date", "quest_order"],
    )

    # Lifetime quests
    op.create_table(
        "quests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("image", sa.String(256), nullable=False),
        sa.Column("quest_type", sa.String(32), nullable=False),
        sa.Column("requirement", sa.Integer(), nullable=False),
        sa.Column("reward_type", sa.String(16), nullable=False),
        sa.Column("reward_amount", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user_quests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("quest_id", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["quest_id"], ["quests.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("address", "quest_id", name="uq_user_quests_address_quest"),
    )


def downgrade() -> None:
    op.drop_table("user_quests")
    op.drop_table("quests")
    op.drop_index("idx_user_daily_quests_address_date", table_name="user_daily_quests")
    op.drop_table("user_daily_quests")
    op.drop_index("idx_daily_quests_active_order", table_name="daily_quests")
    op.drop_table("daily_quests")
    op.drop_index("idx_referred_users_referral_joined", table_name="referred_users")
    op.drop_table("referred_users")
    op.drop_table("referrals")
    op.drop_index("idx_weekly_raffle_winners_address", table_name="weekly_raffle_winners")
    op.drop_table("weekly_raffle_winners")
    op.drop_index("idx_weekly_leaderboard_entries_address", table_name="weekly_leaderboard_entries")
    op.drop_table("weekly_leaderboard_entries")
    op.drop_index("idx_weekly_leaderboards_week_start", table_name="weekly_leaderboards")
    op.drop_table("weekly_leaderboards")
    op.drop_index("idx_activities_name", table_name="activities")
    op.drop_index("idx_activities_date", table_name="activities")
    op.drop_index("idx_activities_address_date", table_name="activities")
    op.drop_table("activities")
    op.drop_index("idx_user_ledgers_created_at", table_name="user_ledgers")
    op.drop_index("idx_user_ledgers_points", table_name="user_ledgers")
    op.drop_table("user_ledgers")
