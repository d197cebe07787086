"""Storage layer - Database schemas and repositories."""

from gorillionaire_ledger.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from gorillionaire_ledger.storage.models import (
    ActivityModel,
    Base,
    ReferralModel,
    UserLedgerModel,
    WeeklyLeaderboardModel,
)
from gorillionaire_ledger.storage.repos import (
    ActivityDTO,
    ActivityRepository,
    LeaderboardEntryDTO,
    LedgerDTO,
    LedgerRepository,
    QuestRepository,
    RaffleWinnerDTO,
    ReferralRepository,
    WeeklyLeaderboardDTO,
    WeeklyLeaderboardRepository,
    ensure_utc,
)

__all__ = [
    "ActivityDTO",
    "ActivityModel",
    "ActivityRepository",
    "Base",
    "DatabaseManager",
    "LeaderboardEntryDTO",
    "LedgerDTO",
    "LedgerRepository",
    "QuestRepository",
    "RaffleWinnerDTO",
    "ReferralModel",
    "ReferralRepository",
    "UserLedgerModel",
    "WeeklyLeaderboardDTO",
    "WeeklyLeaderboardModel",
    "WeeklyLeaderboardRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "ensure_utc",
    "init_async_db",
]
