"""Read-only weekly leaderboard projections.

Current-week standings are computed live from the activity log and can be
cached in Redis for a short TTL. Archived snapshots are read straight from
storage.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gorillionaire_ledger.leaderboard.archiver import WeeklyArchiver
from gorillionaire_ledger.leaderboard.week import WeekBoundaries, week_boundaries, week_info
from gorillionaire_ledger.ledger.errors import NotFoundError
from gorillionaire_ledger.ledger.models import Page
from gorillionaire_ledger.ledger.notifier import NotificationEvent, NotificationType
from gorillionaire_ledger.ledger.service import normalize_address, validate_page
from gorillionaire_ledger.storage.repos import (
    LeaderboardEntryDTO,
    UserWeekHistoryDTO,
    WeeklyLeaderboardDTO,
    WeeklyLeaderboardRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_STANDINGS_CACHE_TTL = 300  # 5 minutes


@dataclass(frozen=True)
class CurrentWeekStandings:
    """A page of live standings for the running week."""

    year: int
    week_number: int
    week_start: datetime
    week_end: datetime
    total_weekly_points: int
    total_participants: int
    page: Page[LeaderboardEntryDTO]


class WeeklyStandings:
    """Weekly leaderboard read API.

    Also a ledger notification listener: every XP gain drops the cached
    standings of the running week.
    """

    name = "standings_cache"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        archiver: WeeklyArchiver,
        *,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_STANDINGS_CACHE_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._archiver = archiver
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cache_prefix = "weekly_standings:"

    def _cache_key(self, bounds: WeekBoundaries) -> str:
        return f"{self._cache_prefix}{bounds.start.date().isoformat()}"

    async def _get_cached(self, bounds: WeekBoundaries) -> list[LeaderboardEntryDTO] | None:
        if not self._redis or self._cache_ttl <= 0:
            return None
        try:
            cached = await self._redis.get(self._cache_key(bounds))
            if cached is None:
                return None
            data = json.loads(cached if isinstance(cached, str) else cached.decode())
            return [LeaderboardEntryDTO(**row) for row in data]
        except Exception as e:
            logger.warning("Failed to read cached standings for %s: %s", bounds.start.date(), e)
            return None

    async def _cache(self, bounds: WeekBoundaries, entries: list[LeaderboardEntryDTO]) -> None:
        if not self._redis or self._cache_ttl <= 0:
            return
        try:
            await self._redis.set(
                self._cache_key(bounds),
                json.dumps([asdict(e) for e in entries]),
                ex=self._cache_ttl,
            )
        except Exception as e:
            logger.warning("Failed to cache standings for %s: %s", bounds.start.date(), e)

    async def invalidate(self) -> None:
        """Drop the cached standings of the running week."""
        if not self._redis:
            return
        try:
            await self._redis.delete(self._cache_key(week_boundaries(self._clock())))
        except Exception as e:
            logger.warning("Failed to invalidate cached standings: %s", e)

    async def send(self, event: NotificationEvent) -> None:
        if event.event_type is NotificationType.XP_GAINED:
            await self.invalidate()

    async def _current_entries(self) -> tuple[WeekBoundaries, list[LeaderboardEntryDTO]]:
        bounds = week_boundaries(self._clock())
        cached = await self._get_cached(bounds)
        if cached is not None:
            return bounds, cached
        async with self._session_factory() as session:
            entries, _ = await self._archiver.compute_standings(session, bounds.start)
        await self._cache(bounds, entries)
        return bounds, entries

    async def current_week(self, *, page: int = 1, limit: int = 20) -> CurrentWeekStandings:
        """Paginated live standings for the running week."""
        offset, limit = validate_page(page, limit)
        bounds, entries = await self._current_entries()
        info = week_info(bounds.start)
        return CurrentWeekStandings(
            year=info.year,
            week_number=info.week_number,
            week_start=bounds.start,
            week_end=bounds.end,
            total_weekly_points=sum(e.weekly_points for e in entries),
            total_participants=len(entries),
            page=Page(items=entries[offset : offset + limit], total=len(entries), page=page, limit=limit),
        )

    async def user_current_week(self, address: str) -> LeaderboardEntryDTO | None:
        """The user's live entry for the running week, or None if they have not scored."""
        normalized = normalize_address(address)
        _, entries = await self._current_entries()
        return next((e for e in entries if e.address == normalized), None)

    async def list_snapshots(self, *, page: int = 1, limit: int = 10) -> Page[WeeklyLeaderboardDTO]:
        """Archived snapshots, most recent week first."""
        offset, limit = validate_page(page, limit)
        async with self._session_factory() as session:
            repo = WeeklyLeaderboardRepository(session)
            items = await repo.list_recent(offset=offset, limit=limit)
            total = await repo.count()
        return Page(items=items, total=total, page=page, limit=limit)

    async def get_snapshot(self, year: int, week_number: int) -> WeeklyLeaderboardDTO:
        """Raises NotFoundError when the week was never archived."""
        async with self._session_factory() as session:
            snapshot = await WeeklyLeaderboardRepository(session).get(year, week_number)
        if snapshot is None:
            raise NotFoundError(f"No leaderboard archived for {year}-W{week_number:02d}")
        return snapshot

    async def user_history(
        self, address: str, *, page: int = 1, limit: int = 10
    ) -> Page[UserWeekHistoryDTO]:
        """The user's placement in every archived week, most recent first."""
        normalized = normalize_address(address)
        offset, limit = validate_page(page, limit)
        async with self._session_factory() as session:
            repo = WeeklyLeaderboardRepository(session)
            items = await repo.user_history(normalized, offset=offset, limit=limit)
            total = await repo.count_user_history(normalized)
        return Page(items=items, total=total, page=page, limit=limit)
