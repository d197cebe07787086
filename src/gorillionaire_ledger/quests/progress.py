"""Quest progress derived from the activity log.

Progress is never stored as a source of truth: it is recomputed from the
day's (or lifetime's) activity records every time it is read.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum

from gorillionaire_ledger.ledger.models import ActivityKind
from gorillionaire_ledger.storage.repos import ActivityDTO, DailyQuestDTO

DAY = timedelta(days=1)


class DailyQuestType(str, Enum):
    """Metric a daily quest tracks."""

    DAILY_TRANSACTIONS = "dailyTransactions"
    DAILY_VOLUME = "dailyVolume"
    DAILY_SIGNALS = "dailySignals"
    DAILY_STREAK = "dailyStreak"


class LifetimeQuestType(str, Enum):
    """Metric a lifetime quest tracks."""

    ACCEPTED_SIGNALS = "acceptedSignals"
    REFUSE_SIGNALS = "refuseSignals"
    STREAK_SIGNALS = "streakSignals"


@dataclass(frozen=True)
class DailyMetrics:
    """Per-day totals that daily quests consume."""

    transactions: int = 0
    volume: float = 0.0
    signals: int = 0
    streak: int = 0

    def value_for(self, quest_type: str) -> float:
        if quest_type == DailyQuestType.DAILY_TRANSACTIONS.value:
            return self.transactions
        if quest_type == DailyQuestType.DAILY_VOLUME.value:
            return self.volume
        if quest_type == DailyQuestType.DAILY_SIGNALS.value:
            return self.signals
        if quest_type == DailyQuestType.DAILY_STREAK.value:
            return self.streak
        return 0


def day_window(now: datetime) -> tuple[date, datetime, datetime]:
    """UTC quest date of ``now`` with its ``[start, next_start)`` bounds."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    now = now.astimezone(UTC)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start.date(), start, start + DAY


def daily_metrics(activities: Iterable[ActivityDTO], *, streak: int = 0) -> DailyMetrics:
    """Summarize one day of activities.

    Trades count as transactions and contribute their USD value to the
    volume. Any activity linked to a signal (accepted or refused) counts
    toward signals.
    """
    transactions = 0
    volume = Decimal(0)
    signals = 0
    for activity in activities:
        if activity.kind == ActivityKind.TRADE.value:
            transactions += 1
            if activity.usd_value is not None:
                volume += activity.usd_value
        if activity.signal_id is not None:
            signals += 1
    return DailyMetrics(transactions=transactions, volume=float(volume), signals=signals, streak=streak)


def tiered_progress(metric: float, requirements: Sequence[int]) -> list[float]:
    """Split ``metric`` across quests that consume it in tiers.

    Quest ``i`` only sees what is left after the requirements of quests
    ``0..i-1`` are met, clamped to its own requirement.

    >>> tiered_progress(4, [1, 2, 3])
    [1, 2, 1]
    """
    progress: list[float] = []
    consumed = 0
    for requirement in requirements:
        available = max(0, metric - consumed)
        progress.append(min(available, requirement))
        consumed += requirement
    return progress


def progress_percentage(progress: float, requirement: int) -> int:
    if requirement <= 0:
        return 0
    return round(min(progress / requirement * 100, 100))


def _fib_ladder() -> list[DailyQuestDTO]:
    names = [
        ("First Trade", "Complete your first trade of the day"),
        ("Getting Started", "Complete 2 trades today"),
        ("Active Trader", "Complete 3 trades today"),
        ("Dedicated Trader", "Complete 5 trades today"),
        ("Trading Enthusiast", "Complete 8 trades today"),
        ("Trading Pro", "Complete 13 trades today"),
        ("Trading Master", "Complete 21 trades today"),
        ("Trading Champion", "Complete 34 trades today"),
        ("Trading Legend", "Complete 55 trades today"),
        ("Trading God", "Complete 89 trades today"),
        ("Trading Titan", "Complete 144 trades today"),
        ("Trading Emperor", "Complete 233 trades today"),
        ("Trading Sovereign", "Complete 377 trades today"),
        ("Trading Overlord", "Complete 610 trades today"),
        ("Trading Deity", "Complete 987 trades today"),
    ]
    requirements = [1, 2, 3, 5, 8, 13, 21, 34, 55, 89, 144, 233, 377, 610, 987]
    rewards = [1, 2, 3, 5, 8, 13, 21, 34, 55, 89, 267, 699, 1131, 1830, 4935]
    return [
        DailyQuestDTO(
            name=name,
            description=description,
            quest_type=DailyQuestType.DAILY_TRANSACTIONS.value,
            requirement=requirement,
            reward_amount=reward,
            quest_order=level,
            level=level,
            image="/propic.png",
        )
        for level, ((name, description), requirement, reward) in enumerate(
            zip(names, requirements, rewards, strict=True), start=1
        )
    ]


DEFAULT_DAILY_QUESTS: tuple[DailyQuestDTO, ...] = tuple(_fib_ladder())
