"""Tests for the activity ledger."""

import asyncio
import math
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gorillionaire_ledger.ledger.errors import ConflictError, NotFoundError, ValidationError
from gorillionaire_ledger.ledger.models import (
    ACCOUNT_CONNECTED,
    STREAK_EXTENDED,
    ActivityKind,
)
from gorillionaire_ledger.ledger.notifier import NotificationDispatcher, NotificationType
from gorillionaire_ledger.ledger.service import (
    ActivityLedger,
    normalize_address,
    parse_usd_value,
    validate_page,
    validate_points,
)
from gorillionaire_ledger.storage.repos import ActivityRepository
from conftest import FakeClock


async def _activity_sum(session_factory: async_sessionmaker[AsyncSession], address: str) -> int:
    async with session_factory() as session:
        return await ActivityRepository(session).sum_points_for_address(address)


# ============================================================================
# Input validation
# ============================================================================


class TestValidation:
    def test_normalize_address_lowercases_and_strips(self) -> None:
        assert normalize_address("  0xABCdef  ") == "0xabcdef"

    @pytest.mark.parametrize("address", ["", "   ", None, 42, "0x" + "a" * 41])
    def test_normalize_address_rejects(self, address: object) -> None:
        with pytest.raises(ValidationError):
            normalize_address(address)

    @pytest.mark.parametrize("points", [0, 7, 7.0, Decimal("3")])
    def test_validate_points_accepts_whole_numbers(self, points: object) -> None:
        assert validate_points(points) == int(points)  # type: ignore[call-overload]

    @pytest.mark.parametrize(
        "points", [-1, 1.5, math.nan, math.inf, True, "10", None, Decimal("NaN")]
    )
    def test_validate_points_rejects(self, points: object) -> None:
        with pytest.raises(ValidationError):
            validate_points(points)

    def test_parse_usd_value(self) -> None:
        assert parse_usd_value("12.5") == Decimal("12.5")
        assert parse_usd_value(0) == Decimal("0")

    @pytest.mark.parametrize("value", ["abc", "nan", "Infinity", -1, True, None])
    def test_parse_usd_value_rejects(self, value: object) -> None:
        with pytest.raises(ValidationError):
            parse_usd_value(value)

    def test_validate_page(self) -> None:
        assert validate_page(3, 20) == (40, 20)
        with pytest.raises(ValidationError):
            validate_page(0, 20)
        with pytest.raises(ValidationError):
            validate_page(1, 101)


# ============================================================================
# record_activity
# ============================================================================


class TestRecordActivity:
    @pytest.mark.asyncio
    async def test_creates_ledger_and_awards_first_streak(
        self, ledger: ActivityLedger, sample_address: str
    ) -> None:
        result = await ledger.record_activity(sample_address, "Trade", 42)

        assert result.created is True
        assert result.points_awarded == 42
        assert result.streak_bonus_awarded == 10
        assert result.new_streak == 1
        assert result.total_points == 52

        stored = await ledger.get_ledger(sample_address)
        assert stored is not None
        assert stored.points == 52
        assert stored.streak == 1
        assert stored.streak_last_update == datetime(2024, 6, 12, tzinfo=UTC)

        page = await ledger.list_activities(sample_address)
        assert [a.name for a in page.items] == [STREAK_EXTENDED, "Trade"]
        assert page.total == 2

    @pytest.mark.asyncio
    async def test_address_is_case_insensitive(self, ledger: ActivityLedger) -> None:
        await ledger.record_activity("0xABCDEF", "Trade", 1)
        second = await ledger.record_activity("0xabcdef", "Trade", 1)
        assert second.created is False
        assert second.address == "0xabcdef"

    @pytest.mark.asyncio
    async def test_same_day_activity_has_no_bonus(
        self, ledger: ActivityLedger, sample_address: str
    ) -> None:
        await ledger.record_activity(sample_address, "Trade", 5)
        result = await ledger.record_activity(sample_address, "Trade", 5)
        assert result.streak_bonus_awarded == 0
        assert result.streak_changed is False
        assert result.total_points == 20

    @pytest.mark.asyncio
    async def test_streak_sequence_across_days(
        self, ledger: ActivityLedger, clock: FakeClock, sample_address: str
    ) -> None:
        first = await ledger.record_activity(sample_address, "Trade", 1)
        assert (first.new_streak, first.streak_bonus_awarded) == (1, 10)

        clock.advance(days=1)
        second = await ledger.record_activity(sample_address, "Trade", 1)
        assert (second.new_streak, second.streak_bonus_awarded) == (2, 20)

        clock.advance(days=3)
        third = await ledger.record_activity(sample_address, "Trade", 1)
        assert (third.new_streak, third.streak_bonus_awarded) == (1, 10)

    @pytest.mark.asyncio
    async def test_points_equal_sum_of_activities(
        self,
        ledger: ActivityLedger,
        clock: FakeClock,
        session_factory: async_sessionmaker[AsyncSession],
        sample_address: str,
    ) -> None:
        for day, points in enumerate([3, 0, 17, 5, 250, 1]):
            clock.advance(days=day % 3, hours=2)
            await ledger.record_activity(sample_address, "Trade", points)
        await ledger.record_activity(sample_address, "Bonus", 9, apply_streak=False)

        stored = await ledger.get_ledger(sample_address)
        assert stored is not None
        assert stored.points == await _activity_sum(session_factory, sample_address)

    @pytest.mark.asyncio
    async def test_apply_streak_false_skips_streak(
        self, ledger: ActivityLedger, sample_address: str
    ) -> None:
        result = await ledger.record_activity(sample_address, "Quest Completed: X", 5, apply_streak=False)
        assert result.new_streak == 0
        assert result.streak_bonus_awarded == 0
        assert result.total_points == 5

    @pytest.mark.asyncio
    async def test_metadata_is_stored(self, ledger: ActivityLedger, sample_address: str) -> None:
        await ledger.record_activity(
            sample_address,
            "Trade",
            13,
            {"tx_hash": "0xdead", "intent_id": "intent-1", "signal_id": "sig-1", "usd_value": "12.5"},
            apply_streak=False,
        )
        page = await ledger.list_activities(sample_address)
        activity = page.items[0]
        assert activity.tx_hash == "0xdead"
        assert activity.intent_id == "intent-1"
        assert activity.signal_id == "sig-1"
        assert activity.usd_value == Decimal("12.5")
        assert activity.kind == ActivityKind.TRADE.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("name", "points", "metadata"),
        [
            ("", 1, None),
            ("Trade", -1, None),
            ("Trade", 1.5, None),
            ("Trade", math.nan, None),
            ("x" * 129, 1, None),
            ("Trade", 1, {"unexpected": 1}),
            ("Trade", 1, {"usd_value": "abc"}),
            ("Trade", 1, {"usd_value": "nan"}),
            ("Trade", 1, {"usd_value": -1}),
        ],
    )
    async def test_invalid_input_writes_nothing(
        self,
        ledger: ActivityLedger,
        sample_address: str,
        name: str,
        points: float,
        metadata: dict | None,
    ) -> None:
        with pytest.raises(ValidationError):
            await ledger.record_activity(sample_address, name, points, metadata)
        assert await ledger.get_ledger(sample_address) is None

    @pytest.mark.asyncio
    async def test_must_exist_flow_raises_not_found(
        self, ledger: ActivityLedger, sample_address: str
    ) -> None:
        with pytest.raises(NotFoundError):
            await ledger.record_activity(sample_address, "Signal Refused", 5, create_if_missing=False)
        assert await ledger.get_ledger(sample_address) is None

    @pytest.mark.asyncio
    async def test_duplicate_tx_hash_is_conflict_and_rolls_back(
        self, ledger: ActivityLedger, sample_address: str
    ) -> None:
        await ledger.record_activity(sample_address, "Trade", 10, {"tx_hash": "0xabc"})
        before = await ledger.get_ledger(sample_address)

        with pytest.raises(ConflictError):
            await ledger.record_activity(sample_address, "Trade", 10, {"tx_hash": "0xabc"})

        after = await ledger.get_ledger(sample_address)
        assert before is not None and after is not None
        assert after.points == before.points

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_lose_updates(
        self,
        ledger: ActivityLedger,
        session_factory: async_sessionmaker[AsyncSession],
        sample_address: str,
    ) -> None:
        await ledger.record_activity(sample_address, "Trade", 0)
        before = await ledger.get_ledger(sample_address)
        assert before is not None

        n = 25
        await asyncio.gather(*(ledger.record_activity(sample_address, "Trade", 1) for _ in range(n)))

        after = await ledger.get_ledger(sample_address)
        assert after is not None
        assert after.points == before.points + n
        assert after.points == await _activity_sum(session_factory, sample_address)


# ============================================================================
# Concurrent ledger creation
# ============================================================================


class TestConcurrentCreation:
    """Separate ledger instances share no in-process lock, like separate workers."""

    @pytest.mark.asyncio
    async def test_racing_first_activities_both_commit(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
        sample_address: str,
    ) -> None:
        first = ActivityLedger(session_factory, clock=clock)
        second = ActivityLedger(session_factory, clock=clock)

        results = await asyncio.gather(
            first.record_activity(sample_address, "Trade", 1),
            second.record_activity(sample_address, "Trade", 1),
        )

        assert sorted(r.created for r in results) == [False, True]
        stored = await first.get_ledger(sample_address)
        assert stored is not None
        # 1 + 1 for the trades, 10 for the first streak day
        assert stored.points == 12
        assert stored.points == await _activity_sum(session_factory, sample_address)

    @pytest.mark.asyncio
    async def test_racing_first_sign_ins_connect_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
        sample_address: str,
    ) -> None:
        first = ActivityLedger(session_factory, clock=clock)
        second = ActivityLedger(session_factory, clock=clock)

        results = await asyncio.gather(first.sign_in(sample_address), second.sign_in(sample_address))

        assert sorted(r.created for r in results) == [False, True]
        stored = await first.get_ledger(sample_address)
        assert stored is not None
        assert stored.points == 60
        activities = await first.list_activities(sample_address)
        assert [a.name for a in activities.items].count(ACCOUNT_CONNECTED) == 1


# ============================================================================
# sign_in
# ============================================================================


class TestSignIn:
    @pytest.mark.asyncio
    async def test_first_sign_in_connects_account(
        self, ledger: ActivityLedger, sample_address: str
    ) -> None:
        result = await ledger.sign_in(sample_address)

        assert result.created is True
        assert result.activity_name == ACCOUNT_CONNECTED
        assert result.points_awarded == 50
        assert result.streak_bonus_awarded == 10

        stored = await ledger.get_ledger(sample_address)
        assert stored is not None
        assert stored.points == 60
        assert stored.last_sign_in == datetime(2024, 6, 12, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_repeat_sign_in_same_day_awards_nothing(
        self, ledger: ActivityLedger, clock: FakeClock, sample_address: str
    ) -> None:
        await ledger.sign_in(sample_address)
        clock.advance(hours=3)
        result = await ledger.sign_in(sample_address)

        assert result.created is False
        assert result.total_awarded == 0
        stored = await ledger.get_ledger(sample_address)
        assert stored is not None
        assert stored.points == 60
        assert stored.last_sign_in == clock.now

    @pytest.mark.asyncio
    async def test_next_day_sign_in_extends_streak(
        self, ledger: ActivityLedger, clock: FakeClock, sample_address: str
    ) -> None:
        await ledger.sign_in(sample_address)
        clock.advance(days=1)
        result = await ledger.sign_in(sample_address)

        assert result.new_streak == 2
        assert result.streak_bonus_awarded == 20
        assert result.total_points == 80


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    @pytest.mark.asyncio
    async def test_list_activities_newest_first(
        self, ledger: ActivityLedger, clock: FakeClock, sample_address: str
    ) -> None:
        for i in range(5):
            await ledger.record_activity(sample_address, f"Activity {i}", i, apply_streak=False)
            clock.advance(minutes=1)

        page = await ledger.list_activities(sample_address, page=1, limit=2)
        assert [a.name for a in page.items] == ["Activity 4", "Activity 3"]
        assert page.total == 5
        assert page.total_pages == 3
        assert page.has_more is True

        last = await ledger.list_activities(sample_address, page=3, limit=2)
        assert [a.name for a in last.items] == ["Activity 0"]
        assert last.has_more is False

    @pytest.mark.asyncio
    async def test_require_ledger(self, ledger: ActivityLedger, sample_address: str) -> None:
        with pytest.raises(NotFoundError):
            await ledger.require_ledger(sample_address)

    @pytest.mark.asyncio
    async def test_rank_and_all_time_leaderboard(
        self, ledger: ActivityLedger, clock: FakeClock
    ) -> None:
        await ledger.record_activity("0xaaa", "Trade", 100, apply_streak=False)
        clock.advance(minutes=1)
        await ledger.record_activity("0xbbb", "Trade", 250, apply_streak=False)
        clock.advance(minutes=1)
        await ledger.record_activity("0xccc", "Trade", 250, apply_streak=False)

        assert await ledger.get_rank("0xbbb") == 1
        assert await ledger.get_rank("0xccc") == 2
        assert await ledger.get_rank("0xaaa") == 3
        assert await ledger.get_rank("0xmissing") is None

        board = await ledger.all_time_leaderboard(page=1, limit=10)
        assert [e.address for e in board.items] == ["0xbbb", "0xccc", "0xaaa"]
        assert board.total == 3


# ============================================================================
# Notifications
# ============================================================================


class TestNotifications:
    @pytest.mark.asyncio
    async def test_events_published_after_commit(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
        sample_address: str,
    ) -> None:
        channel = AsyncMock()
        channel.name = "mock"
        dispatcher = NotificationDispatcher([channel])
        ledger = ActivityLedger(session_factory, dispatcher=dispatcher, clock=clock)

        await ledger.record_activity(sample_address, "Trade", 7)
        await dispatcher.drain()

        events = [call.args[0] for call in channel.send.await_args_list]
        types = {e.event_type for e in events}
        assert types == {NotificationType.XP_GAINED, NotificationType.STREAK_UPDATE}
        xp = next(e for e in events if e.event_type is NotificationType.XP_GAINED)
        assert xp.payload["points"] == 7
        assert xp.payload["streak_bonus"] == 10
        assert xp.payload["total_points"] == 17

    @pytest.mark.asyncio
    async def test_channel_failure_never_fails_the_write(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
        sample_address: str,
    ) -> None:
        channel = AsyncMock()
        channel.name = "broken"
        channel.send.side_effect = ConnectionError("down")
        dispatcher = NotificationDispatcher([channel])
        ledger = ActivityLedger(session_factory, dispatcher=dispatcher, clock=clock)

        result = await ledger.record_activity(sample_address, "Trade", 7)
        await dispatcher.drain()

        assert result.total_points == 17
        assert channel.send.await_count == 2
        stored = await ledger.get_ledger(sample_address)
        assert stored is not None and stored.points == 17

    @pytest.mark.asyncio
    async def test_no_xp_event_for_zero_award(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
        sample_address: str,
    ) -> None:
        channel = AsyncMock()
        channel.name = "mock"
        dispatcher = NotificationDispatcher([channel])
        ledger = ActivityLedger(session_factory, dispatcher=dispatcher, clock=clock)

        await ledger.record_activity(sample_address, "Nothing", 0, apply_streak=False)
        await dispatcher.drain()

        channel.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_time_is_taken_from_clock(
        self, ledger: ActivityLedger, clock: FakeClock, sample_address: str
    ) -> None:
        clock.set(datetime(2025, 1, 1, 0, 0, 1, tzinfo=UTC))
        result = await ledger.record_activity(sample_address, "Trade", 1)
        assert result.occurred_at == clock.now
        assert result.streak_last_update == datetime(2025, 1, 1, tzinfo=UTC)
        assert clock.now - result.occurred_at == timedelta(0)
