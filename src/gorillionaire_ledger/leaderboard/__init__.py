"""Weekly leaderboard: week windows, raffle, archival and read API."""

from gorillionaire_ledger.leaderboard.archiver import (
    DEFAULT_EXCLUDED_ACTIVITY_NAMES,
    WeeklyArchiver,
    rank_entries,
    winning_chance,
)
from gorillionaire_ledger.leaderboard.raffle import RaffleSelector
from gorillionaire_ledger.leaderboard.scheduler import WeeklyArchiveScheduler
from gorillionaire_ledger.leaderboard.standings import CurrentWeekStandings, WeeklyStandings
from gorillionaire_ledger.leaderboard.week import (
    WeekBoundaries,
    WeekInfo,
    is_week_over,
    next_week_start,
    previous_week_start,
    week_boundaries,
    week_info,
)

__all__ = [
    "DEFAULT_EXCLUDED_ACTIVITY_NAMES",
    "CurrentWeekStandings",
    "RaffleSelector",
    "WeekBoundaries",
    "WeekInfo",
    "WeeklyArchiveScheduler",
    "WeeklyArchiver",
    "WeeklyStandings",
    "is_week_over",
    "next_week_start",
    "previous_week_start",
    "rank_entries",
    "week_boundaries",
    "week_info",
    "winning_chance",
]
