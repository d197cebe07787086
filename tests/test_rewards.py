"""Tests for the inbound reward triggers."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from gorillionaire_ledger.config import RewardSettings
from gorillionaire_ledger.ledger.errors import ConflictError, NotFoundError, ValidationError
from gorillionaire_ledger.ledger.models import ActivityKind
from gorillionaire_ledger.ledger.service import ActivityLedger
from gorillionaire_ledger.referrals.service import ReferralService
from gorillionaire_ledger.rewards import RewardsService

REFERRER = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def referrals(ledger: ActivityLedger) -> ReferralService:
    return ReferralService(ledger)


@pytest.fixture
def rewards(ledger: ActivityLedger, referrals: ReferralService) -> RewardsService:
    return RewardsService(ledger, referrals)


# ============================================================================
# Trades
# ============================================================================


class TestConfirmTrade:
    @pytest.mark.asyncio
    async def test_points_are_usd_value_rounded_up(
        self, rewards: RewardsService, ledger: ActivityLedger, sample_address: str
    ) -> None:
        reward = await rewards.confirm_trade(
            sample_address, tx_hash="0xtx1", intent_id="intent-1", usd_value="12.01", signal_id="sig-1"
        )

        assert reward.record.points_awarded == 13
        assert reward.referral_bonus is None
        trade = [a for a in (await ledger.list_activities(sample_address)).items if a.name == "Trade"][0]
        assert trade.kind == ActivityKind.TRADE.value
        assert trade.tx_hash == "0xtx1"
        assert trade.intent_id == "intent-1"
        assert trade.signal_id == "sig-1"
        assert trade.usd_value == Decimal("12.01")

    @pytest.mark.asyncio
    async def test_duplicate_tx_hash_rejected(
        self, rewards: RewardsService, ledger: ActivityLedger, sample_address: str
    ) -> None:
        await rewards.confirm_trade(sample_address, tx_hash="0xtx1", intent_id="i-1", usd_value=5)
        points = (await ledger.require_ledger(sample_address)).points

        with pytest.raises(ConflictError):
            await rewards.confirm_trade(sample_address, tx_hash="0xtx1", intent_id="i-2", usd_value=5)
        assert (await ledger.require_ledger(sample_address)).points == points

    @pytest.mark.parametrize("usd_value", [-1, "abc", float("nan"), float("inf"), True, None])
    @pytest.mark.asyncio
    async def test_invalid_usd_value(
        self, rewards: RewardsService, ledger: ActivityLedger, sample_address: str, usd_value: object
    ) -> None:
        with pytest.raises(ValidationError):
            await rewards.confirm_trade(sample_address, tx_hash="0xtx", intent_id="i", usd_value=usd_value)
        assert await ledger.get_ledger(sample_address) is None

    @pytest.mark.asyncio
    async def test_missing_identifiers(self, rewards: RewardsService, sample_address: str) -> None:
        with pytest.raises(ValidationError, match="tx_hash"):
            await rewards.confirm_trade(sample_address, tx_hash="", intent_id="i", usd_value=1)
        with pytest.raises(ValidationError, match="intent_id"):
            await rewards.confirm_trade(sample_address, tx_hash="0xtx", intent_id=" ", usd_value=1)

    @pytest.mark.asyncio
    async def test_referrer_receives_trade_bonus(
        self,
        rewards: RewardsService,
        referrals: ReferralService,
        ledger: ActivityLedger,
        sample_address: str,
    ) -> None:
        await ledger.sign_in(REFERRER)
        code = (await referrals.generate_code(REFERRER)).code
        await referrals.process_referral(code, sample_address)

        reward = await rewards.confirm_trade(sample_address, tx_hash="0xtx", intent_id="i", usd_value=42)

        assert reward.referral_bonus is not None
        assert reward.referral_bonus.address == REFERRER
        assert reward.referral_bonus.points_awarded == 5

    @pytest.mark.asyncio
    async def test_bonus_failure_keeps_trade(
        self, ledger: ActivityLedger, sample_address: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        referrals = AsyncMock(spec=ReferralService)
        referrals.award_trade_bonus.side_effect = RuntimeError("boom")
        rewards = RewardsService(ledger, referrals)

        reward = await rewards.confirm_trade(sample_address, tx_hash="0xtx", intent_id="i", usd_value=3)

        assert reward.referral_bonus is None
        assert reward.record.points_awarded == 3
        assert (await ledger.require_ledger(sample_address)).points == reward.record.total_points
        assert "Referral trade bonus failed" in caplog.text


# ============================================================================
# One-off rewards
# ============================================================================


class TestSignalRefusal:
    @pytest.mark.asyncio
    async def test_requires_ledger(self, rewards: RewardsService, sample_address: str) -> None:
        with pytest.raises(NotFoundError):
            await rewards.refuse_signal(sample_address, "sig-1")

    @pytest.mark.asyncio
    async def test_awards_points(self, rewards: RewardsService, sample_address: str) -> None:
        await rewards.sign_in(sample_address)

        result = await rewards.refuse_signal(sample_address, "sig-1")

        assert result.activity_name == "Signal Refused"
        assert result.points_awarded == 5


class TestV2Access:
    @pytest.mark.asyncio
    async def test_grant_once(self, rewards: RewardsService, ledger: ActivityLedger, sample_address: str) -> None:
        result = await rewards.grant_v2_access(sample_address, "EARLY")

        assert result.created
        assert result.points_awarded == 100
        stored = await ledger.require_ledger(sample_address)
        assert stored.v2_access_code == "EARLY"
        assert stored.v2_access_enabled_at is not None

        with pytest.raises(ConflictError):
            await rewards.grant_v2_access(sample_address, "AGAIN")
        assert (await ledger.require_ledger(sample_address)).points == stored.points


class TestDiscordVerification:
    @pytest.mark.asyncio
    async def test_requires_ledger(self, rewards: RewardsService, sample_address: str) -> None:
        with pytest.raises(NotFoundError):
            await rewards.verify_discord(sample_address, "gorilla#1")

    @pytest.mark.asyncio
    async def test_verify_once(self, rewards: RewardsService, ledger: ActivityLedger, sample_address: str) -> None:
        await rewards.sign_in(sample_address)

        result = await rewards.verify_discord(sample_address, "gorilla#1")

        assert result.points_awarded == 50
        assert (await ledger.require_ledger(sample_address)).discord_username == "gorilla#1"
        with pytest.raises(ConflictError):
            await rewards.verify_discord(sample_address, "gorilla#2")


class TestFromSettings:
    def test_uses_configured_points(self, ledger: ActivityLedger, referrals: ReferralService) -> None:
        settings = RewardSettings(REWARD_SIGNAL_REFUSAL_POINTS=7, REWARD_V2_ACCESS_POINTS=11)

        rewards = RewardsService.from_settings(ledger, referrals, settings)

        assert rewards._signal_refusal_points == 7
        assert rewards._v2_access_points == 11
