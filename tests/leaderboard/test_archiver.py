"""Tests for weekly leaderboard archival."""

import asyncio
import logging
import random
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import FakeClock
from gorillionaire_ledger.leaderboard.archiver import WeeklyArchiver, rank_entries, winning_chance
from gorillionaire_ledger.leaderboard.raffle import RaffleSelector
from gorillionaire_ledger.ledger.models import (
    ACCOUNT_CONNECTED,
    REFERRAL_TRADE_BONUS,
    STREAK_EXTENDED,
    ActivityKind,
)
from gorillionaire_ledger.storage.models import WeeklyLeaderboardModel
from gorillionaire_ledger.storage.repos import (
    ActivityRepository,
    LedgerRepository,
    ReferralRepository,
    WeeklyActivityTotal,
)

ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"

# Week 23 of 2024 runs Monday 2024-06-03 to Sunday 2024-06-09.
WEEK_23_DAY = datetime(2024, 6, 5, 12, 0, tzinfo=UTC)


async def _seed(
    session_factory: async_sessionmaker[AsyncSession],
    address: str,
    created_at: datetime,
    activities: list[tuple[str, int, datetime]],
) -> None:
    async with session_factory() as session:
        ledgers = LedgerRepository(session)
        ledger = await ledgers.get_model(address)
        if ledger is None:
            ledger = await ledgers.create(address, now=created_at)
        repo = ActivityRepository(session)
        for name, points, when in activities:
            await repo.add(address, name=name, kind=ActivityKind.OTHER.value, points=points, date=when)
            ledger.points += points
        await session.commit()


async def _seed_standard_week(session_factory: async_sessionmaker[AsyncSession]) -> None:
    # Carol and Bob tie on points; Carol's ledger is older.
    await _seed(session_factory, CAROL, datetime(2024, 1, 1, tzinfo=UTC), [("Trade", 250, WEEK_23_DAY)])
    await _seed(session_factory, BOB, datetime(2024, 2, 1, tzinfo=UTC), [("Trade", 250, WEEK_23_DAY)])
    await _seed(session_factory, ALICE, datetime(2024, 3, 1, tzinfo=UTC), [("Trade", 100, WEEK_23_DAY)])


@pytest.fixture
def archiver(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> WeeklyArchiver:
    return WeeklyArchiver(session_factory, raffle=RaffleSelector(random.Random(42)), clock=clock)


async def _snapshot_count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(WeeklyLeaderboardModel))
        return int(result.scalar_one())


# ============================================================================
# Ranking helpers
# ============================================================================


class TestRanking:
    def test_winning_chance_rounds_to_two_decimals(self) -> None:
        assert winning_chance(250, 600) == 41.67
        assert winning_chance(100, 600) == 16.67
        assert winning_chance(5, 0) == 0.0

    def test_rank_entries_orders_ties_by_ledger_age(self) -> None:
        totals = [
            WeeklyActivityTotal(ALICE, 100, 1, datetime(2024, 3, 1, tzinfo=UTC)),
            WeeklyActivityTotal(BOB, 250, 2, datetime(2024, 2, 1, tzinfo=UTC)),
            WeeklyActivityTotal(CAROL, 250, 1, datetime(2024, 1, 1, tzinfo=UTC)),
            WeeklyActivityTotal("0xzero", 0, 1, datetime(2024, 1, 1, tzinfo=UTC)),
        ]

        entries = rank_entries(totals, {CAROL: (2, 200)})

        assert [(e.rank, e.address) for e in entries] == [(1, CAROL), (2, BOB), (3, ALICE)]
        assert entries[0].total_referred == 2
        assert entries[0].total_referral_points == 200
        assert entries[1].weekly_activities == 2


# ============================================================================
# Archival
# ============================================================================


class TestArchiveWeek:
    @pytest.mark.asyncio
    async def test_snapshot_ranks_and_chances(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed_standard_week(session_factory)

        snapshot = await archiver.archive_week(WEEK_23_DAY)

        assert snapshot is not None
        assert (snapshot.year, snapshot.week_number) == (2024, 23)
        assert snapshot.week_start == datetime(2024, 6, 3, tzinfo=UTC)
        assert snapshot.week_end == datetime(2024, 6, 9, 23, 59, 59, 999000, tzinfo=UTC)
        assert snapshot.total_weekly_points == 600
        assert snapshot.total_participants == 3
        assert [(e.rank, e.address, e.winning_chances) for e in snapshot.entries] == [
            (1, CAROL, 41.67),
            (2, BOB, 41.67),
            (3, ALICE, 16.67),
        ]

    @pytest.mark.asyncio
    async def test_raffle_draws_distinct_participants(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed_standard_week(session_factory)

        snapshot = await archiver.archive_week(WEEK_23_DAY)

        assert snapshot is not None
        winners = [w.address for w in snapshot.raffle_winners]
        assert len(winners) == 3
        assert set(winners) == {ALICE, BOB, CAROL}
        assert all(w.prize_amount == 50 for w in snapshot.raffle_winners)

    @pytest.mark.asyncio
    async def test_excluded_names_do_not_score(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed(
            session_factory,
            ALICE,
            datetime(2024, 1, 1, tzinfo=UTC),
            [
                (ACCOUNT_CONNECTED, 50, WEEK_23_DAY),
                (STREAK_EXTENDED, 20, WEEK_23_DAY),
                (REFERRAL_TRADE_BONUS, 3, WEEK_23_DAY),
                ("Trade", 40, WEEK_23_DAY),
            ],
        )
        await _seed(session_factory, BOB, datetime(2024, 1, 2, tzinfo=UTC), [(ACCOUNT_CONNECTED, 50, WEEK_23_DAY)])

        snapshot = await archiver.archive_week(WEEK_23_DAY)

        assert snapshot is not None
        assert [(e.address, e.weekly_points, e.weekly_activities) for e in snapshot.entries] == [(ALICE, 40, 1)]
        assert snapshot.total_weekly_points == 40

    @pytest.mark.asyncio
    async def test_week_window_is_half_open(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed(
            session_factory,
            ALICE,
            datetime(2024, 1, 1, tzinfo=UTC),
            [
                ("Trade", 1, datetime(2024, 6, 2, 23, 59, 59, tzinfo=UTC)),
                ("Trade", 10, datetime(2024, 6, 3, tzinfo=UTC)),
                ("Trade", 100, datetime(2024, 6, 9, 23, 59, 59, 999500, tzinfo=UTC)),
                ("Trade", 1000, datetime(2024, 6, 10, tzinfo=UTC)),
            ],
        )

        snapshot = await archiver.archive_week(WEEK_23_DAY)

        assert snapshot is not None
        assert snapshot.entries[0].weekly_points == 110

    @pytest.mark.asyncio
    async def test_referral_stats_are_joined(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed_standard_week(session_factory)
        async with session_factory() as session:
            repo = ReferralRepository(session)
            referral = await repo.create(CAROL, "ABCD1234", now=datetime(2024, 1, 1, tzinfo=UTC))
            await repo.add_referred_user(referral.id, "0xd00d", points_earned=100, joined_at=WEEK_23_DAY)
            await repo.add_referred_user(
                referral.id, "0xbeef", points_earned=100, joined_at=datetime(2024, 5, 1, tzinfo=UTC)
            )
            await session.commit()

        snapshot = await archiver.archive_week(WEEK_23_DAY)

        assert snapshot is not None
        carol = snapshot.entries[0]
        assert carol.address == CAROL
        assert (carol.total_referred, carol.total_referral_points) == (1, 100)
        assert (snapshot.entries[1].total_referred, snapshot.entries[1].total_referral_points) == (0, 0)

    @pytest.mark.asyncio
    async def test_empty_week_is_not_archived(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed(session_factory, ALICE, datetime(2024, 1, 1, tzinfo=UTC), [("Trade", 0, WEEK_23_DAY)])

        assert await archiver.archive_week(WEEK_23_DAY) is None
        assert await _snapshot_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_rearchive_returns_stored_snapshot(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await _seed_standard_week(session_factory)

        first = await archiver.archive_week(WEEK_23_DAY)
        # Late activity must not alter an archived week.
        await _seed(session_factory, ALICE, datetime(2024, 3, 1, tzinfo=UTC), [("Trade", 900, WEEK_23_DAY)])
        second = await archiver.archive_week(datetime(2024, 6, 9, tzinfo=UTC))

        assert first is not None and second is not None
        assert second.id == first.id
        assert second.total_weekly_points == 600
        assert [w.address for w in second.raffle_winners] == [w.address for w in first.raffle_winners]
        assert await _snapshot_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_concurrent_archivals_store_one_snapshot(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        await _seed_standard_week(session_factory)
        first = WeeklyArchiver(session_factory, raffle=RaffleSelector(random.Random(1)), clock=clock)
        second = WeeklyArchiver(session_factory, raffle=RaffleSelector(random.Random(2)), clock=clock)

        results = await asyncio.gather(first.archive_week(WEEK_23_DAY), second.archive_week(WEEK_23_DAY))

        assert all(r is not None for r in results)
        assert {(r.year, r.week_number) for r in results if r} == {(2024, 23)}
        assert await _snapshot_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_archive_previous_week_uses_clock(
        self, archiver: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        await _seed_standard_week(session_factory)
        clock.set(datetime(2024, 6, 10, 0, 0, 1, tzinfo=UTC))

        snapshot = await archiver.archive_previous_week()

        assert snapshot is not None
        assert (snapshot.year, snapshot.week_number) == (2024, 23)


# ============================================================================
# Backfill
# ============================================================================


class TestArchivePastWeeks:
    @pytest.fixture
    def backfiller(self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> WeeklyArchiver:
        return WeeklyArchiver(
            session_factory, raffle=RaffleSelector(random.Random(3)), clock=clock, backfill_weeks=4
        )

    async def _seed_three_weeks(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        await _seed(
            session_factory,
            ALICE,
            datetime(2024, 1, 1, tzinfo=UTC),
            [
                ("Trade", 10, datetime(2024, 5, 15, tzinfo=UTC)),
                ("Trade", 20, datetime(2024, 5, 29, tzinfo=UTC)),
                ("Trade", 30, WEEK_23_DAY),
                # The running week is never archived.
                ("Trade", 40, datetime(2024, 6, 11, tzinfo=UTC)),
            ],
        )

    @pytest.mark.asyncio
    async def test_archives_missing_finished_weeks(
        self, backfiller: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await self._seed_three_weeks(session_factory)

        archived = await backfiller.archive_past_weeks()

        assert [(s.year, s.week_number) for s in archived] == [(2024, 23), (2024, 22), (2024, 20)]
        assert [s.total_weekly_points for s in archived] == [30, 20, 10]

    @pytest.mark.asyncio
    async def test_skips_weeks_already_archived(
        self, backfiller: WeeklyArchiver, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await self._seed_three_weeks(session_factory)
        await backfiller.archive_week(WEEK_23_DAY)

        archived = await backfiller.archive_past_weeks()

        assert [(s.year, s.week_number) for s in archived] == [(2024, 22), (2024, 20)]
        assert await backfiller.archive_past_weeks() == []

    @pytest.mark.asyncio
    async def test_failure_for_one_week_does_not_stop_backfill(
        self,
        backfiller: WeeklyArchiver,
        session_factory: async_sessionmaker[AsyncSession],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await self._seed_three_weeks(session_factory)
        original = backfiller.archive_week

        async def flaky(reference_date: datetime):
            if reference_date == datetime(2024, 5, 27, tzinfo=UTC):
                raise RuntimeError("boom")
            return await original(reference_date)

        backfiller.archive_week = flaky  # type: ignore[method-assign]

        with caplog.at_level(logging.ERROR):
            archived = await backfiller.archive_past_weeks()

        assert [(s.year, s.week_number) for s in archived] == [(2024, 23), (2024, 20)]
        assert "Backfill failed for 2024-W22" in caplog.text
