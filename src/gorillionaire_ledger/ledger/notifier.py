"""Fire-and-forget notifications for committed ledger mutations.

Events are delivered after the ledger transaction commits. Each channel
delivery runs as its own background task; a failing channel is logged and
never surfaces to the caller that recorded the activity.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import aiohttp
from redis.asyncio import Redis

from gorillionaire_ledger.ledger.models import RecordResult

logger = logging.getLogger(__name__)

DEFAULT_REDIS_CHANNEL = "gorillionaire:ledger-events"
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 8.0

# Discord embed colors (decimal values)
COLOR_XP_GAINED = 3066993  # Green (#2ECC71)
COLOR_STREAK = 15105570  # Orange (#E67E22)


class NotificationType(str, Enum):
    """Ledger event types published to notification channels."""

    XP_GAINED = "XP_GAINED"
    STREAK_UPDATE = "STREAK_UPDATE"


@dataclass(frozen=True)
class NotificationEvent:
    """A ledger event ready for delivery."""

    event_type: NotificationType
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Serialize for pub/sub publishing."""
        return {
            "type": self.event_type.value,
            "data": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationChannel(Protocol):
    """A destination for ledger events."""

    name: str

    async def send(self, event: NotificationEvent) -> None: ...


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate an Ethereum address to 0x1234...5678 format."""
    if len(address) < chars * 2 + 4:
        return address
    return f"{address[: chars + 2]}...{address[-chars:]}"


def build_xp_embed(event: NotificationEvent) -> dict[str, object]:
    """Build the Discord embed announcing an XP gain."""
    data = event.payload
    fields: list[dict[str, object]] = [
        {"name": "Wallet", "value": f"`{truncate_address(str(data['address']))}`", "inline": True},
        {"name": "Activity", "value": str(data["activity"]), "inline": True},
        {"name": "XP", "value": f"+{data['points']}", "inline": True},
    ]
    if data.get("streak_bonus"):
        fields.append(
            {
                "name": "Streak",
                "value": f"{data['streak']} days (+{data['streak_bonus']} XP)",
                "inline": True,
            }
        )
    fields.append({"name": "Total XP", "value": f"{data['total_points']:,}", "inline": True})

    return {
        "title": "XP Gained",
        "color": COLOR_STREAK if data.get("streak_bonus") else COLOR_XP_GAINED,
        "fields": fields,
        "timestamp": event.timestamp.isoformat(),
        "footer": {"text": "Gorillionaire"},
    }


class RedisPubSubChannel:
    """Publishes events to a Redis channel consumed by the WebSocket broadcaster."""

    name = "redis"

    def __init__(self, redis: Redis, *, channel: str = DEFAULT_REDIS_CHANNEL) -> None:
        self._redis = redis
        self._channel = channel

    async def send(self, event: NotificationEvent) -> None:
        await self._redis.publish(self._channel, json.dumps(event.to_dict(), default=str))


class DiscordWebhookChannel:
    """Posts XP announcements to a Discord webhook.

    Only ``XP_GAINED`` events are posted; streak updates are folded into
    the XP embed.
    """

    name = "discord"

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session

    async def _post(self, session: aiohttp.ClientSession, body: dict[str, object]) -> None:
        async with session.post(self._webhook_url, json=body, timeout=self._timeout) as resp:
            resp.raise_for_status()

    async def send(self, event: NotificationEvent) -> None:
        if event.event_type is not NotificationType.XP_GAINED:
            return
        body = {"embeds": [build_xp_embed(event)]}
        if self._session is not None:
            await self._post(self._session, body)
            return
        async with aiohttp.ClientSession() as session:
            await self._post(session, body)


class NotificationDispatcher:
    """Schedules event delivery to every channel without awaiting it.

    Example:
        ```python
        dispatcher = NotificationDispatcher([RedisPubSubChannel(redis)])
        dispatcher.publish(result)  # returns immediately
        await dispatcher.drain()    # on shutdown
        ```
    """

    def __init__(self, channels: Sequence[NotificationChannel] = (), *, enabled: bool = True) -> None:
        self._channels = list(channels)
        self._listeners: list[NotificationChannel] = []
        self._enabled = enabled
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def add_listener(self, listener: NotificationChannel) -> None:
        """Register an in-process listener, delivered even when notifications are disabled."""
        self._listeners.append(listener)

    def notify(self, event_type: NotificationType, payload: dict[str, Any]) -> None:
        """Schedule delivery of one event to all channels.

        Must be called from a running event loop.
        """
        targets = [*self._channels, *self._listeners] if self._enabled else list(self._listeners)
        if not targets:
            return
        event = NotificationEvent(event_type=event_type, payload=payload)
        loop = asyncio.get_running_loop()
        for channel in targets:
            task = loop.create_task(self._deliver(channel, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def publish(self, result: RecordResult) -> None:
        """Emit the events describing a committed ledger mutation."""
        if result.total_awarded > 0:
            self.notify(
                NotificationType.XP_GAINED,
                {
                    "address": result.address,
                    "activity": result.activity_name,
                    "points": result.points_awarded,
                    "streak_bonus": result.streak_bonus_awarded,
                    "streak": result.new_streak,
                    "total_points": result.total_points,
                },
            )
        if result.streak_changed:
            self.notify(
                NotificationType.STREAK_UPDATE,
                {
                    "address": result.address,
                    "streak": result.new_streak,
                    "streak_last_update": (
                        result.streak_last_update.isoformat() if result.streak_last_update else None
                    ),
                },
            )

    async def _deliver(self, channel: NotificationChannel, event: NotificationEvent) -> None:
        try:
            await channel.send(event)
        except Exception as e:
            logger.warning(
                "Notification %s via %s failed for %s: %s",
                event.event_type.value,
                channel.name,
                truncate_address(str(event.payload.get("address", ""))),
                e,
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
