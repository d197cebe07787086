"""Data models for the ledger module."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Conventional activity names. Weekly aggregation excludes some of these by name.
ACCOUNT_CONNECTED = "Account Connected"
STREAK_EXTENDED = "Streak Extended"
TRADE = "Trade"
REFERRAL_BONUS = "Referral Bonus"
REFERRAL_TRADE_BONUS = "Referral Trade Bonus"
SIGNAL_REFUSED = "Signal Refused"
V2_ACCESS_GRANTED = "V2 Access Granted"
DISCORD_VERIFIED = "Discord Verified"
DAILY_QUEST_COMPLETED = "Daily Quest Completed: {quest_name}"
QUEST_COMPLETED = "Quest Completed: {quest_name}"

# Correlation fields accepted in activity metadata.
METADATA_FIELDS = frozenset(
    {
        "intent_id",
        "tx_hash",
        "signal_id",
        "referral_id",
        "referred_user_address",
        "original_trade_points",
        "quest_id",
        "usd_value",
    }
)


class ActivityKind(str, Enum):
    """Category of an activity record."""

    TRADE = "trade"
    QUEST_COMPLETION = "quest-completion"
    REFERRAL_BONUS = "referral-bonus"
    REFERRAL_TRADE_BONUS = "referral-trade-bonus"
    SIGN_IN = "sign-in"
    STREAK_BONUS = "streak-bonus"
    V2_ACCESS_GRANT = "v2-access-grant"
    SIGNAL_REFUSAL = "signal-refusal"
    DISCORD_VERIFICATION = "discord-verification"
    OTHER = "other"


_KIND_BY_NAME = {
    ACCOUNT_CONNECTED: ActivityKind.SIGN_IN,
    STREAK_EXTENDED: ActivityKind.STREAK_BONUS,
    TRADE: ActivityKind.TRADE,
    REFERRAL_BONUS: ActivityKind.REFERRAL_BONUS,
    REFERRAL_TRADE_BONUS: ActivityKind.REFERRAL_TRADE_BONUS,
    SIGNAL_REFUSED: ActivityKind.SIGNAL_REFUSAL,
    V2_ACCESS_GRANTED: ActivityKind.V2_ACCESS_GRANT,
    DISCORD_VERIFIED: ActivityKind.DISCORD_VERIFICATION,
}


def infer_kind(name: str) -> ActivityKind:
    """Best-effort category for callers that only supply a name."""
    kind = _KIND_BY_NAME.get(name)
    if kind is not None:
        return kind
    lowered = name.lower()
    if "quest" in lowered:
        return ActivityKind.QUEST_COMPLETION
    if "trade" in lowered:
        return ActivityKind.TRADE
    if "referral" in lowered:
        return ActivityKind.REFERRAL_BONUS
    return ActivityKind.OTHER


@dataclass(frozen=True)
class ActivityRequest:
    """A validated request to append one activity to a ledger.

    Attributes:
        address: Lowercased wallet address.
        name: Activity label.
        points: Points awarded by this record.
        kind: Activity category.
        metadata: Correlation fields (subset of ``METADATA_FIELDS``).
        create_if_missing: Create the ledger when absent; otherwise raise
            ``NotFoundError``.
        apply_streak: Run the streak engine as part of this activity.
    """

    address: str
    name: str
    points: int
    kind: ActivityKind
    metadata: dict[str, Any] = field(default_factory=dict)
    create_if_missing: bool = True
    apply_streak: bool = True


@dataclass(frozen=True)
class RecordResult:
    """Outcome of a committed ledger mutation.

    Attributes:
        address: Ledger address.
        activity_name: Name of the base activity.
        points_awarded: Points from the base activity.
        streak_bonus_awarded: Bonus XP from a streak change (0 if none).
        new_streak: Streak after the mutation.
        streak_last_update: Stored streak last-update after the mutation.
        streak_changed: True when the streak engine changed the streak.
        total_points: Ledger balance after the mutation.
        created: True when this mutation created the ledger.
        occurred_at: Timestamp written on the activity.
    """

    address: str
    activity_name: str
    points_awarded: int
    streak_bonus_awarded: int
    new_streak: int
    streak_last_update: datetime | None
    streak_changed: bool
    total_points: int
    created: bool
    occurred_at: datetime

    @property
    def total_awarded(self) -> int:
        return self.points_awarded + self.streak_bonus_awarded


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a paginated read."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages
