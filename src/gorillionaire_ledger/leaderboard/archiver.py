"""Weekly leaderboard archival.

Snapshots one UTC week of scoring activity into an immutable leaderboard
with raffle winners. At most one snapshot exists per ISO (year, week):
the archiver checks for an existing snapshot first and falls back to the
table's uniqueness constraint when two archivals race.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gorillionaire_ledger.leaderboard.raffle import (
    DEFAULT_PRIZE_AMOUNT,
    DEFAULT_WINNER_COUNT,
    RaffleSelector,
)
from gorillionaire_ledger.leaderboard.week import WEEK, is_week_over, week_boundaries, week_info
from gorillionaire_ledger.ledger.errors import TransientInfrastructureError
from gorillionaire_ledger.ledger.models import ACCOUNT_CONNECTED, REFERRAL_TRADE_BONUS, STREAK_EXTENDED
from gorillionaire_ledger.ledger.retry import with_retry
from gorillionaire_ledger.storage.repos import (
    ActivityRepository,
    LeaderboardEntryDTO,
    ReferralRepository,
    WeeklyActivityTotal,
    WeeklyLeaderboardDTO,
    WeeklyLeaderboardRepository,
)

logger = logging.getLogger(__name__)

# Passive or double-counted activity never scores in the weekly leaderboard.
DEFAULT_EXCLUDED_ACTIVITY_NAMES = (ACCOUNT_CONNECTED, STREAK_EXTENDED, REFERRAL_TRADE_BONUS)
DEFAULT_BACKFILL_WEEKS = 52


def winning_chance(weekly_points: int, total_weekly_points: int) -> float:
    """Share of the week's points as a percentage rounded to 2 decimals."""
    if total_weekly_points <= 0:
        return 0.0
    return round(weekly_points / total_weekly_points * 100, 2)


def rank_entries(
    totals: Iterable[WeeklyActivityTotal],
    referral_stats: dict[str, tuple[int, int]] | None = None,
) -> list[LeaderboardEntryDTO]:
    """Rank weekly totals into leaderboard entries.

    Order is weekly points descending, then earlier ledger creation, then
    address for a stable result. Addresses with non-positive points are
    dropped.
    """
    referral_stats = referral_stats or {}
    scoring = sorted(
        (t for t in totals if t.weekly_points > 0),
        key=lambda t: (-t.weekly_points, t.ledger_created_at, t.address),
    )
    total_weekly_points = sum(t.weekly_points for t in scoring)

    entries: list[LeaderboardEntryDTO] = []
    for rank, total in enumerate(scoring, start=1):
        referred, referral_points = referral_stats.get(total.address, (0, 0))
        entries.append(
            LeaderboardEntryDTO(
                rank=rank,
                address=total.address,
                weekly_points=total.weekly_points,
                weekly_activities=total.weekly_activities,
                winning_chances=winning_chance(total.weekly_points, total_weekly_points),
                total_referred=referred,
                total_referral_points=referral_points,
            )
        )
    return entries


class WeeklyArchiver:
    """Builds and persists weekly leaderboard snapshots.

    Example:
        ```python
        archiver = WeeklyArchiver(db.session_factory, raffle=RaffleSelector())
        snapshot = await archiver.archive_week(datetime(2024, 6, 12, tzinfo=UTC))
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        raffle: RaffleSelector | None = None,
        excluded_activity_names: Iterable[str] = DEFAULT_EXCLUDED_ACTIVITY_NAMES,
        winner_count: int = DEFAULT_WINNER_COUNT,
        prize_amount: int = DEFAULT_PRIZE_AMOUNT,
        backfill_weeks: int = DEFAULT_BACKFILL_WEEKS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._raffle = raffle or RaffleSelector()
        self._excluded = tuple(excluded_activity_names)
        self._winner_count = winner_count
        self._prize_amount = prize_amount
        self._backfill_weeks = backfill_weeks
        self._clock = clock or (lambda: datetime.now(UTC))

    async def compute_standings(
        self, session: AsyncSession, reference_date: datetime
    ) -> tuple[list[LeaderboardEntryDTO], int]:
        """Ranked entries and total weekly points for the week of ``reference_date``."""
        bounds = week_boundaries(reference_date)
        totals = await ActivityRepository(session).weekly_totals(
            bounds.start, bounds.next_start, excluded_names=self._excluded
        )
        referral_stats = await ReferralRepository(session).weekly_stats(
            (t.address for t in totals), bounds.start, bounds.next_start
        )
        entries = rank_entries(totals, referral_stats)
        return entries, sum(e.weekly_points for e in entries)

    @with_retry()
    async def archive_week(self, reference_date: datetime) -> WeeklyLeaderboardDTO | None:
        """Archive the week containing ``reference_date``.

        Returns the existing snapshot unchanged when the week was already
        archived, None when nobody scored that week, otherwise the newly
        persisted snapshot.

        Raises:
            TransientInfrastructureError: Storage failure. Safe to retry.
        """
        bounds = week_boundaries(reference_date)
        info = week_info(bounds.start)

        try:
            async with self._session_factory() as session:
                repo = WeeklyLeaderboardRepository(session)
                existing = await repo.get(info.year, info.week_number)
                if existing is not None:
                    logger.debug("Week %d-W%02d already archived", info.year, info.week_number)
                    return existing

                entries, total_weekly_points = await self.compute_standings(session, bounds.start)
                if not entries:
                    logger.info("No scoring activity in %d-W%02d; nothing archived", info.year, info.week_number)
                    return None

                winners = self._raffle.select_winners(
                    entries, self._winner_count, prize_amount=self._prize_amount
                )
                snapshot = WeeklyLeaderboardDTO(
                    year=info.year,
                    week_number=info.week_number,
                    week_start=bounds.start,
                    week_end=bounds.end,
                    total_weekly_points=total_weekly_points,
                    total_participants=len(entries),
                    entries=entries,
                    raffle_winners=winners,
                )
                try:
                    await repo.insert(snapshot)
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info(
                        "Week %d-W%02d archived concurrently; returning stored snapshot",
                        info.year,
                        info.week_number,
                    )
                    return await WeeklyLeaderboardRepository(session).get(info.year, info.week_number)
        except (OperationalError, InterfaceError, TimeoutError) as e:
            raise TransientInfrastructureError(f"Storage unavailable: {e}", last_exception=e) from e

        logger.info(
            "Archived %d-W%02d: %d participants, %d points, %d raffle winner(s)",
            info.year,
            info.week_number,
            snapshot.total_participants,
            snapshot.total_weekly_points,
            len(winners),
        )
        return snapshot

    async def archive_previous_week(self) -> WeeklyLeaderboardDTO | None:
        """Archive the week before the current one."""
        return await self.archive_week(week_boundaries(self._clock()).start - WEEK)

    async def archive_past_weeks(self) -> list[WeeklyLeaderboardDTO]:
        """Backfill snapshots for finished weeks that were never archived.

        Walks ``backfill_weeks`` week starts back from now. A failure for
        one week is logged and the walk continues.
        """
        now = self._clock()
        current_start = week_boundaries(now).start
        archived: list[WeeklyLeaderboardDTO] = []

        for weeks_back in range(1, self._backfill_weeks + 1):
            week_start = current_start - WEEK * weeks_back
            if not is_week_over(week_start, now=now):
                continue
            info = week_info(week_start)
            try:
                async with self._session_factory() as session:
                    if await WeeklyLeaderboardRepository(session).exists(info.year, info.week_number):
                        continue
                snapshot = await self.archive_week(week_start)
            except Exception:
                logger.exception("Backfill failed for %d-W%02d", info.year, info.week_number)
                continue
            if snapshot is not None:
                archived.append(snapshot)

        logger.info("Backfill complete: %d week(s) archived", len(archived))
        return archived
