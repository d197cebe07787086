"""Application wiring for the Gorillionaire ledger.

Builds every service from ``Settings`` and owns the lifecycle of the
shared resources (database engine, Redis client, weekly scheduler).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from gorillionaire_ledger.config import Settings, get_settings
from gorillionaire_ledger.leaderboard.archiver import WeeklyArchiver
from gorillionaire_ledger.leaderboard.raffle import RaffleSelector
from gorillionaire_ledger.leaderboard.scheduler import WeeklyArchiveScheduler
from gorillionaire_ledger.leaderboard.standings import WeeklyStandings
from gorillionaire_ledger.ledger.notifier import (
    DiscordWebhookChannel,
    NotificationChannel,
    NotificationDispatcher,
    RedisPubSubChannel,
)
from gorillionaire_ledger.ledger.service import ActivityLedger
from gorillionaire_ledger.ledger.streak import StreakEngine
from gorillionaire_ledger.quests.service import QuestProgressTracker
from gorillionaire_ledger.referrals.service import ReferralService
from gorillionaire_ledger.rewards import RewardsService
from gorillionaire_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    """Application lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class LedgerApp:
    """Composition root.

    Example:
        ```python
        async with LedgerApp(get_settings()) as app:
            await app.rewards.sign_in("0xabc...")
            standings = await app.standings.current_week()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: Redis | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
        run_scheduler: bool = True,
    ) -> None:
        self._settings = settings or get_settings()
        self._state = AppState.STOPPED
        self._owns_redis = redis is None
        self._run_scheduler = run_scheduler

        settings = self._settings
        self.db = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
            echo=settings.database.echo,
        )
        self.redis = redis if redis is not None else Redis.from_url(settings.redis.url)

        channels: list[NotificationChannel] = [
            RedisPubSubChannel(self.redis, channel=settings.notifications.redis_channel)
        ]
        if settings.discord.enabled and settings.discord.webhook_url is not None:
            channels.append(
                DiscordWebhookChannel(
                    settings.discord.webhook_url.get_secret_value(),
                    timeout_seconds=settings.discord.timeout_seconds,
                )
            )
        self.dispatcher = NotificationDispatcher(channels, enabled=settings.notifications.enabled)

        self.ledger = ActivityLedger(
            self.db.session_factory,
            streak_engine=StreakEngine(
                grace_period_hours=settings.streak.grace_period_hours,
                max_bonus_days=settings.streak.max_bonus_days,
                xp_multiplier=settings.streak.xp_multiplier,
            ),
            dispatcher=self.dispatcher,
            clock=clock,
            sign_in_points=settings.rewards.sign_in_points,
        )
        self.referrals = ReferralService(
            self.ledger,
            bonus_points=settings.rewards.referral_bonus_points,
            max_rewarded_referrals=settings.rewards.max_rewarded_referrals,
            trade_bonus_rate=settings.rewards.referral_trade_bonus_rate,
        )
        self.rewards = RewardsService.from_settings(self.ledger, self.referrals, settings.rewards)
        self.quests = QuestProgressTracker(self.ledger)

        self.archiver = WeeklyArchiver(
            self.db.session_factory,
            raffle=RaffleSelector(rng),
            excluded_activity_names=settings.leaderboard.excluded_activity_names,
            winner_count=settings.leaderboard.raffle_winner_count,
            prize_amount=settings.leaderboard.raffle_prize_amount,
            backfill_weeks=settings.leaderboard.backfill_weeks,
            clock=clock,
        )
        self.standings = WeeklyStandings(
            self.db.session_factory,
            self.archiver,
            redis=self.redis,
            cache_ttl_seconds=settings.leaderboard.standings_cache_ttl_seconds,
            clock=clock,
        )
        self.dispatcher.add_listener(self.standings)
        self.scheduler = WeeklyArchiveScheduler(self.archiver, clock=clock)

    @property
    def state(self) -> AppState:
        return self._state

    async def start(self) -> None:
        """Start background services.

        Raises:
            RuntimeError: If the app is not stopped.
        """
        if self._state != AppState.STOPPED:
            raise RuntimeError(f"Cannot start app in state {self._state}")

        self._state = AppState.STARTING
        logger.info("Starting ledger app: %s", self._settings.redacted_summary())
        try:
            if self._run_scheduler:
                self.scheduler.start()
            self._state = AppState.RUNNING
        except Exception as e:
            self._state = AppState.ERROR
            logger.error("Failed to start ledger app: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        if self._state == AppState.STOPPED:
            return
        self._state = AppState.STOPPING
        logger.info("Stopping ledger app...")
        if self.scheduler.running:
            await self.scheduler.stop()
        await self.dispatcher.drain()
        await self._cleanup()
        self._state = AppState.STOPPED
        logger.info("Ledger app stopped")

    async def _cleanup(self) -> None:
        await self.db.dispose_async()
        if self._owns_redis:
            await self.redis.aclose()

    async def __aenter__(self) -> LedgerApp:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
