"""Ledger layer - Atomic points, activity history and streaks."""

from gorillionaire_ledger.ledger.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from gorillionaire_ledger.ledger.models import (
    ActivityKind,
    ActivityRequest,
    Page,
    RecordResult,
    infer_kind,
)
from gorillionaire_ledger.ledger.notifier import (
    DiscordWebhookChannel,
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
    RedisPubSubChannel,
)
from gorillionaire_ledger.ledger.service import ActivityLedger
from gorillionaire_ledger.ledger.streak import StreakEngine, StreakOutcome, StreakTransition

__all__ = [
    "ActivityKind",
    "ActivityLedger",
    "ActivityRequest",
    "ConflictError",
    "DiscordWebhookChannel",
    "LedgerError",
    "NotFoundError",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationType",
    "Page",
    "RecordResult",
    "RedisPubSubChannel",
    "StreakEngine",
    "StreakOutcome",
    "StreakTransition",
    "TransientInfrastructureError",
    "ValidationError",
    "infer_kind",
]
