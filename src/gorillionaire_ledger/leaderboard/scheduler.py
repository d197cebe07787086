"""Background task that archives the previous week every Monday 00:00 UTC."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from gorillionaire_ledger.leaderboard.archiver import WeeklyArchiver
from gorillionaire_ledger.leaderboard.week import next_week_start, previous_week_start
from gorillionaire_ledger.storage.repos import WeeklyLeaderboardDTO

logger = logging.getLogger(__name__)

# Fire slightly after midnight so the previous week is unambiguously over.
DEFAULT_START_DELAY_SECONDS = 1.0


class WeeklyArchiveScheduler:
    """Runs ``WeeklyArchiver`` on a weekly timer.

    The loop never dies on an archival error; it logs and waits for the
    next Monday.
    """

    def __init__(
        self,
        archiver: WeeklyArchiver,
        *,
        clock: Callable[[], datetime] | None = None,
        start_delay_seconds: float = DEFAULT_START_DELAY_SECONDS,
        backfill_on_start: bool = True,
    ) -> None:
        self._archiver = archiver
        self._clock = clock or (lambda: datetime.now(UTC))
        self._start_delay = start_delay_seconds
        self._backfill_on_start = backfill_on_start
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def seconds_until_next_run(self) -> float:
        now = self._clock()
        return max(0.0, (next_week_start(now) - now).total_seconds()) + self._start_delay

    async def run_once(self, now: datetime | None = None) -> WeeklyLeaderboardDTO | None:
        """Archive the week before ``now``, then backfill any missed weeks.

        Errors are logged, never raised.
        """
        now = now or self._clock()
        snapshot = None
        try:
            snapshot = await self._archiver.archive_week(previous_week_start(now))
        except Exception:
            logger.exception("Scheduled weekly archival failed")
        try:
            await self._archiver.archive_past_weeks()
        except Exception:
            logger.exception("Weekly backfill failed")
        return snapshot

    async def _run(self) -> None:
        if self._backfill_on_start:
            try:
                await self._archiver.archive_past_weeks()
            except Exception:
                logger.exception("Startup backfill failed")
        while not self._stop.is_set():
            delay = self.seconds_until_next_run()
            logger.info("Next weekly archival in %.0f seconds", delay)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            if self._stop.is_set():
                break
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Weekly archive scheduler started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Weekly archive scheduler stopped")
