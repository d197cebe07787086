"""Inbound reward triggers.

Each trigger validates its own inputs, decides whether the ledger must
already exist and delegates the point mutation to ``ActivityLedger``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from gorillionaire_ledger.config import RewardSettings
from gorillionaire_ledger.ledger.errors import ConflictError, ValidationError
from gorillionaire_ledger.ledger.models import (
    DISCORD_VERIFIED,
    SIGNAL_REFUSED,
    TRADE,
    V2_ACCESS_GRANTED,
    ActivityKind,
    RecordResult,
)
from gorillionaire_ledger.ledger.notifier import truncate_address
from gorillionaire_ledger.ledger.service import ActivityLedger, normalize_address, parse_usd_value
from gorillionaire_ledger.referrals.service import ReferralService
from gorillionaire_ledger.storage.repos import ActivityRepository, LedgerRepository

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 128
MAX_DISCORD_USERNAME_LENGTH = 64


def _require_text(value: object, field_name: str, max_length: int = MAX_IDENTIFIER_LENGTH) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters")
    return text


@dataclass(frozen=True)
class TradeReward:
    """Outcome of a confirmed trade."""

    record: RecordResult
    referral_bonus: RecordResult | None = None


class RewardsService:
    """Facade over the ledger for the inbound trigger surface.

    Example:
        ```python
        rewards = RewardsService.from_settings(ledger, referrals, settings.rewards)
        await rewards.sign_in("0xabc...")
        await rewards.confirm_trade("0xabc...", tx_hash="0x...", intent_id="i-1", usd_value=12.5)
        ```
    """

    def __init__(
        self,
        ledger: ActivityLedger,
        referrals: ReferralService,
        *,
        signal_refusal_points: int = 5,
        v2_access_points: int = 100,
        discord_verification_points: int = 50,
    ) -> None:
        self._ledger = ledger
        self._referrals = referrals
        self._signal_refusal_points = signal_refusal_points
        self._v2_access_points = v2_access_points
        self._discord_points = discord_verification_points

    @classmethod
    def from_settings(
        cls, ledger: ActivityLedger, referrals: ReferralService, settings: RewardSettings
    ) -> RewardsService:
        return cls(
            ledger,
            referrals,
            signal_refusal_points=settings.signal_refusal_points,
            v2_access_points=settings.v2_access_points,
            discord_verification_points=settings.discord_verification_points,
        )

    async def sign_in(self, address: str) -> RecordResult:
        return await self._ledger.sign_in(address)

    async def confirm_trade(
        self,
        address: str,
        *,
        tx_hash: str,
        intent_id: str,
        usd_value: object,
        signal_id: str | None = None,
    ) -> TradeReward:
        """Award ``ceil(usd_value)`` points for a confirmed trade.

        The referrer of ``address``, if any, then receives the trade bonus
        in a separate transaction; a failure there never undoes the trade.

        Raises:
            ValidationError: Malformed inputs.
            ConflictError: ``tx_hash`` was already rewarded.
        """
        normalized = normalize_address(address)
        tx_hash = _require_text(tx_hash, "tx_hash")
        intent_id = _require_text(intent_id, "intent_id")
        if signal_id is not None:
            signal_id = _require_text(signal_id, "signal_id")
        amount = parse_usd_value(usd_value)
        points = math.ceil(amount)

        async with self._ledger.session() as session:
            if await ActivityRepository(session).tx_hash_exists(tx_hash):
                raise ConflictError(f"Transaction {tx_hash} already rewarded")

        record = await self._ledger.record_activity(
            normalized,
            TRADE,
            points,
            {"tx_hash": tx_hash, "intent_id": intent_id, "signal_id": signal_id, "usd_value": amount},
            kind=ActivityKind.TRADE,
        )

        bonus: RecordResult | None = None
        try:
            bonus = await self._referrals.award_trade_bonus(normalized, points)
        except Exception:
            logger.exception("Referral trade bonus failed for %s", truncate_address(normalized))
        return TradeReward(record=record, referral_bonus=bonus)

    async def refuse_signal(self, address: str, signal_id: str) -> RecordResult:
        """Reward refusing a signal. The ledger must exist."""
        signal_id = _require_text(signal_id, "signal_id")
        return await self._ledger.record_activity(
            address,
            SIGNAL_REFUSED,
            self._signal_refusal_points,
            {"signal_id": signal_id},
            kind=ActivityKind.SIGNAL_REFUSAL,
            create_if_missing=False,
        )

    async def grant_v2_access(self, address: str, access_code: str) -> RecordResult:
        """One-time V2 access grant; creates the ledger when absent.

        Raises:
            ConflictError: V2 access was already granted.
        """
        normalized = normalize_address(address)
        access_code = _require_text(access_code, "access_code", 64)
        request = self._ledger.build_request(
            normalized, V2_ACCESS_GRANTED, self._v2_access_points, kind=ActivityKind.V2_ACCESS_GRANT
        )

        async with self._ledger.transaction(normalized) as session:
            ledgers = LedgerRepository(session)
            existing = await ledgers.get_model(normalized, for_update=True)
            if existing is not None and existing.v2_access_enabled_at is not None:
                raise ConflictError("V2 access already granted")
            result = await self._ledger.apply(session, request)
            ledger = await ledgers.get_model(normalized)
            if ledger is not None:
                ledger.v2_access_code = access_code
                ledger.v2_access_enabled_at = result.occurred_at
                await session.flush()

        logger.info("V2 access granted to %s", truncate_address(normalized))
        self._ledger.publish(result)
        return result

    async def verify_discord(self, address: str, discord_username: str) -> RecordResult:
        """One-time Discord verification reward. The ledger must exist.

        Raises:
            NotFoundError: No ledger for ``address``.
            ConflictError: Discord was already verified.
        """
        normalized = normalize_address(address)
        username = _require_text(discord_username, "discord_username", MAX_DISCORD_USERNAME_LENGTH)
        request = self._ledger.build_request(
            normalized,
            DISCORD_VERIFIED,
            self._discord_points,
            kind=ActivityKind.DISCORD_VERIFICATION,
            create_if_missing=False,
        )

        async with self._ledger.transaction(normalized) as session:
            ledgers = LedgerRepository(session)
            existing = await ledgers.get_model(normalized, for_update=True)
            if existing is not None and existing.discord_username is not None:
                raise ConflictError("Discord already verified")
            result = await self._ledger.apply(session, request)
            ledger = await ledgers.get_model(normalized)
            if ledger is not None:
                ledger.discord_username = username
                await session.flush()

        logger.info("Discord verified for %s as %s", truncate_address(normalized), username)
        self._ledger.publish(result)
        return result
