"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Gorillionaire ledger, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class StreakSettings(BaseSettings):
    """Daily streak rules."""

    model_config = SettingsConfigDict(env_prefix="STREAK_", extra="ignore")

    grace_period_hours: float = Field(
        default=6.0,
        alias="STREAK_GRACE_PERIOD_HOURS",
        ge=0.0,
        le=24.0,
        description="Hours past a one-day gap still counted as consecutive",
    )
    max_bonus_days: int = Field(
        default=365,
        alias="STREAK_MAX_BONUS_DAYS",
        ge=1,
        le=10_000,
        description="Streak length at which the bonus stops growing",
    )
    xp_multiplier: int = Field(
        default=10,
        alias="STREAK_XP_MULTIPLIER",
        ge=0,
        le=1000,
        description="Bonus XP per streak day",
    )


class RewardSettings(BaseSettings):
    """Point amounts for inbound triggers."""

    model_config = SettingsConfigDict(env_prefix="REWARD_", extra="ignore")

    sign_in_points: int = Field(
        default=50,
        alias="REWARD_SIGN_IN_POINTS",
        ge=0,
        description="Points granted once when an account first connects",
    )
    signal_refusal_points: int = Field(
        default=5,
        alias="REWARD_SIGNAL_REFUSAL_POINTS",
        ge=0,
        description="Points for refusing a trading signal",
    )
    v2_access_points: int = Field(
        default=100,
        alias="REWARD_V2_ACCESS_POINTS",
        ge=0,
        description="Points granted with V2 access",
    )
    discord_verification_points: int = Field(
        default=50,
        alias="REWARD_DISCORD_VERIFICATION_POINTS",
        ge=0,
        description="Points for verifying Discord membership",
    )
    referral_bonus_points: int = Field(
        default=100,
        alias="REWARD_REFERRAL_BONUS_POINTS",
        ge=0,
        description="Points a referrer earns per rewarded referral",
    )
    max_rewarded_referrals: int = Field(
        default=3,
        alias="REWARD_MAX_REWARDED_REFERRALS",
        ge=0,
        le=10_000,
        description="Referrals past this count earn the referrer nothing",
    )
    referral_trade_bonus_rate: float = Field(
        default=0.1,
        alias="REWARD_REFERRAL_TRADE_BONUS_RATE",
        ge=0.0,
        le=1.0,
        description="Share of a referred user's trade points credited to the referrer",
    )


class LeaderboardSettings(BaseSettings):
    """Weekly leaderboard and raffle settings."""

    model_config = SettingsConfigDict(env_prefix="LEADERBOARD_", extra="ignore")

    raffle_winner_count: int = Field(
        default=5,
        alias="LEADERBOARD_RAFFLE_WINNER_COUNT",
        ge=0,
        le=100,
        description="Raffle winners drawn per week",
    )
    raffle_prize_amount: int = Field(
        default=50,
        alias="LEADERBOARD_RAFFLE_PRIZE_AMOUNT",
        ge=0,
        description="Prize units awarded per raffle winner",
    )
    backfill_weeks: int = Field(
        default=52,
        alias="LEADERBOARD_BACKFILL_WEEKS",
        ge=0,
        le=520,
        description="How many prior weeks the backfill walks",
    )
    excluded_activity_names: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("Account Connected", "Streak Extended", "Referral Trade Bonus"),
        alias="LEADERBOARD_EXCLUDED_ACTIVITY_NAMES",
        description="Activity names that never count toward weekly points (comma-separated)",
    )
    standings_cache_ttl_seconds: int = Field(
        default=300,
        alias="LEADERBOARD_STANDINGS_CACHE_TTL_SECONDS",
        ge=0,
        le=86_400,
        description="Redis TTL for cached current-week standings (0 disables)",
    )

    @field_validator("excluded_activity_names", mode="before")
    @classmethod
    def _parse_excluded_names(cls, v: object) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(p.strip() for p in v.split(",") if p.strip())
        if isinstance(v, (list, tuple)):
            return tuple(str(x) for x in v)
        raise TypeError("Invalid LEADERBOARD_EXCLUDED_ACTIVITY_NAMES type")


class NotificationSettings(BaseSettings):
    """Ledger event fan-out settings."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="NOTIFY_ENABLED",
        description="Publish XP/streak events after ledger commits",
    )
    redis_channel: str = Field(
        default="gorillionaire:ledger-events",
        alias="NOTIFY_REDIS_CHANNEL",
        description="Redis pub/sub channel consumed by the WebSocket broadcaster",
    )


class DiscordSettings(BaseSettings):
    """Discord notification settings."""

    model_config = SettingsConfigDict(env_prefix="DISCORD_", extra="ignore")

    webhook_url: SecretStr | None = Field(
        default=None,
        alias="DISCORD_WEBHOOK_URL",
        description="Discord webhook URL for XP announcements",
    )
    timeout_seconds: float = Field(
        default=8.0,
        alias="DISCORD_TIMEOUT_SECONDS",
        gt=0.0,
        le=60.0,
        description="HTTP timeout for webhook calls",
    )

    @property
    def enabled(self) -> bool:
        """Check if Discord notifications are enabled."""
        return self.webhook_url is not None


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from gorillionaire_ledger.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.streak.grace_period_hours)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    streak: StreakSettings = Field(
        default_factory=lambda: StreakSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rewards: RewardSettings = Field(
        default_factory=lambda: RewardSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    leaderboard: LeaderboardSettings = Field(
        default_factory=lambda: LeaderboardSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    notifications: NotificationSettings = Field(
        default_factory=lambda: NotificationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    discord: DiscordSettings = Field(
        default_factory=lambda: DiscordSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "streak": {
                "grace_period_hours": str(self.streak.grace_period_hours),
                "max_bonus_days": str(self.streak.max_bonus_days),
                "xp_multiplier": str(self.streak.xp_multiplier),
            },
            "leaderboard": {
                "raffle_winner_count": str(self.leaderboard.raffle_winner_count),
                "raffle_prize_amount": str(self.leaderboard.raffle_prize_amount),
                "backfill_weeks": str(self.leaderboard.backfill_weeks),
            },
            "notifications_enabled": str(self.notifications.enabled),
            "discord_enabled": str(self.discord.enabled),
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
