"""Daily and lifetime quest progress."""

from gorillionaire_ledger.quests.progress import (
    DEFAULT_DAILY_QUESTS,
    DailyMetrics,
    DailyQuestType,
    LifetimeQuestType,
    daily_metrics,
    tiered_progress,
)
from gorillionaire_ledger.quests.service import (
    DailyQuestProgress,
    LifetimeQuestProgress,
    QuestClaim,
    QuestProgressTracker,
)

__all__ = [
    "DEFAULT_DAILY_QUESTS",
    "DailyMetrics",
    "DailyQuestProgress",
    "DailyQuestType",
    "LifetimeQuestProgress",
    "LifetimeQuestType",
    "QuestClaim",
    "QuestProgressTracker",
    "daily_metrics",
    "tiered_progress",
]
