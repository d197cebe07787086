"""Repository pattern implementations for data access.

This module provides data access abstractions for user ledgers, the
activity log, archived weekly leaderboards, referrals and quests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from gorillionaire_ledger.storage.models import (
    ActivityModel,
    DailyQuestModel,
    QuestModel,
    ReferralModel,
    ReferredUserModel,
    UserDailyQuestModel,
    UserLedgerModel,
    UserQuestModel,
    WeeklyLeaderboardEntryModel,
    WeeklyLeaderboardModel,
    WeeklyRaffleWinnerModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes; everything this package stores is UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _optional_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class LedgerDTO:
    """Data transfer object for user ledgers."""

    address: str
    points: int
    streak: int
    streak_last_update: datetime | None
    last_sign_in: datetime | None
    created_at: datetime
    updated_at: datetime
    discord_username: str | None = None
    v2_access_code: str | None = None
    v2_access_enabled_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserLedgerModel) -> LedgerDTO:
        return cls(
            address=model.address,
            points=model.points,
            streak=model.streak,
            streak_last_update=_optional_utc(model.streak_last_update),
            last_sign_in=_optional_utc(model.last_sign_in),
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
            discord_username=model.discord_username,
            v2_access_code=model.v2_access_code,
            v2_access_enabled_at=_optional_utc(model.v2_access_enabled_at),
        )


@dataclass
class ActivityDTO:
    """Data transfer object for activity records."""

    id: int
    address: str
    name: str
    kind: str
    points: int
    date: datetime
    intent_id: str | None = None
    tx_hash: str | None = None
    signal_id: str | None = None
    referral_id: int | None = None
    referred_user_address: str | None = None
    original_trade_points: int | None = None
    quest_id: int | None = None
    usd_value: Decimal | None = None

    @classmethod
    def from_model(cls, model: ActivityModel) -> ActivityDTO:
        return cls(
            id=model.id,
            address=model.address,
            name=model.name,
            kind=model.kind,
            points=model.points,
            date=ensure_utc(model.date),
            intent_id=model.intent_id,
            tx_hash=model.tx_hash,
            signal_id=model.signal_id,
            referral_id=model.referral_id,
            referred_user_address=model.referred_user_address,
            original_trade_points=model.original_trade_points,
            quest_id=model.quest_id,
            usd_value=model.usd_value,
        )


@dataclass
class WeeklyActivityTotal:
    """Per-address aggregate of scoring activity inside one week."""

    address: str
    weekly_points: int
    weekly_activities: int
    ledger_created_at: datetime


@dataclass
class LeaderboardEntryDTO:
    """One ranked row of a weekly leaderboard."""

    rank: int
    address: str
    weekly_points: int
    weekly_activities: int
    winning_chances: float
    total_referred: int = 0
    total_referral_points: int = 0

    @classmethod
    def from_model(cls, model: WeeklyLeaderboardEntryModel) -> LeaderboardEntryDTO:
        return cls(
            rank=model.rank,
            address=model.address,
            weekly_points=model.weekly_points,
            weekly_activities=model.weekly_activities,
            winning_chances=model.winning_chances,
            total_referred=model.total_referred,
            total_referral_points=model.total_referral_points,
        )


@dataclass
class RaffleWinnerDTO:
    """A raffle winner, recorded with the rank and points they had when drawn."""

    address: str
    rank: int
    weekly_points: int
    winning_chances: float
    prize_amount: int

    @classmethod
    def from_model(cls, model: WeeklyRaffleWinnerModel) -> RaffleWinnerDTO:
        return cls(
            address=model.address,
            rank=model.rank,
            weekly_points=model.weekly_points,
            winning_chances=model.winning_chances,
            prize_amount=model.prize_amount,
        )


@dataclass
class WeeklyLeaderboardDTO:
    """An archived weekly leaderboard snapshot."""

    year: int
    week_number: int
    week_start: datetime
    week_end: datetime
    total_weekly_points: int
    total_participants: int
    entries: list[LeaderboardEntryDTO] = field(default_factory=list)
    raffle_winners: list[RaffleWinnerDTO] = field(default_factory=list)
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(
        cls,
        model: WeeklyLeaderboardModel,
        entries: list[LeaderboardEntryDTO],
        raffle_winners: list[RaffleWinnerDTO],
    ) -> WeeklyLeaderboardDTO:
        return cls(
            id=model.id,
            year=model.year,
            week_number=model.week_number,
            week_start=ensure_utc(model.week_start),
            week_end=ensure_utc(model.week_end),
            total_weekly_points=model.total_weekly_points,
            total_participants=model.total_participants,
            entries=entries,
            raffle_winners=raffle_winners,
            created_at=_optional_utc(model.created_at),
        )


@dataclass
class UserWeekHistoryDTO:
    """A user's placement in one archived week."""

    year: int
    week_number: int
    week_start: datetime
    week_end: datetime
    rank: int
    weekly_points: int
    winning_chances: float
    total_participants: int
    is_winner: bool
    prize_amount: int = 0


@dataclass
class ReferralDTO:
    """Data transfer object for referral codes."""

    id: int
    referrer_address: str
    code: str
    total_points_earned: int
    created_at: datetime

    @classmethod
    def from_model(cls, model: ReferralModel) -> ReferralDTO:
        return cls(
            id=model.id,
            referrer_address=model.referrer_address,
            code=model.code,
            total_points_earned=model.total_points_earned,
            created_at=ensure_utc(model.created_at),
        )


@dataclass
class ReferredUserDTO:
    """Data transfer object for referred users."""

    referral_id: int
    address: str
    points_earned: int
    joined_at: datetime

    @classmethod
    def from_model(cls, model: ReferredUserModel) -> ReferredUserDTO:
        return cls(
            referral_id=model.referral_id,
            address=model.address,
            points_earned=model.points_earned,
            joined_at=ensure_utc(model.joined_at),
        )


@dataclass
class DailyQuestDTO:
    """Daily quest definition."""

    name: str
    description: str
    quest_type: str
    requirement: int
    reward_amount: int
    quest_order: int = 1
    level: int = 1
    reward_type: str = "points"
    image: str = ""
    is_active: bool = True
    id: int | None = None

    @classmethod
    def from_model(cls, model: DailyQuestModel) -> DailyQuestDTO:
        return cls(
            id=model.id,
            name=model.name,
            description=model.description,
            quest_type=model.quest_type,
            requirement=model.requirement,
            reward_amount=model.reward_amount,
            quest_order=model.quest_order,
            level=model.level,
            reward_type=model.reward_type,
            image=model.image,
            is_active=model.is_active,
        )


@dataclass
class QuestDTO:
    """Lifetime quest definition."""

    name: str
    description: str
    quest_type: str
    requirement: int
    reward_amount: int
    reward_type: str = "points"
    image: str = ""
    id: int | None = None

    @classmethod
    def from_model(cls, model: QuestModel) -> QuestDTO:
        return cls(
            id=model.id,
            name=model.name,
            description=model.description,
            quest_type=model.quest_type,
            requirement=model.requirement,
            reward_amount=model.reward_amount,
            reward_type=model.reward_type,
            image=model.image,
        )


# ============================================================================
# Repositories
# ============================================================================


class LedgerRepository:
    """Repository for user ledgers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> LedgerDTO | None:
        model = await self.get_model(address)
        return LedgerDTO.from_model(model) if model else None

    async def get_model(self, address: str, *, for_update: bool = False) -> UserLedgerModel | None:
        """Load the mutable ledger row, optionally with a row lock (ignored by SQLite)."""
        stmt = select(UserLedgerModel).where(UserLedgerModel.address == address.lower())
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, address: str, *, now: datetime) -> UserLedgerModel:
        model = UserLedgerModel(
            address=address.lower(),
            points=0,
            streak=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        logger.info("Created ledger for %s", model.address)
        return model

    async def get_or_create(self, address: str, *, now: datetime) -> tuple[UserLedgerModel, bool]:
        """Load the ledger row locked for update, inserting it first when absent.

        The insert skips an existing primary key, so a concurrent creator in
        another session or process is not an ``IntegrityError``. Returns the
        row and whether this call inserted it.
        """
        address = address.lower()
        model = await self.get_model(address, for_update=True)
        if model is not None:
            return model, False

        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(UserLedgerModel).on_conflict_do_nothing(index_elements=["address"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(UserLedgerModel).on_conflict_do_nothing(index_elements=["address"])
        else:
            return await self.create(address, now=now), True

        result = await self.session.execute(
            stmt.values(
                address=address,
                points=0,
                streak=0,
                version=1,
                created_at=now,
                updated_at=now,
            )
        )
        created = result.rowcount == 1
        model = await self.get_model(address, for_update=True)
        if model is None:
            raise RuntimeError(f"Ledger row for {address} missing after insert")
        if created:
            logger.info("Created ledger for %s", address)
        return model, created

    async def rank(self, address: str) -> int | None:
        """All-time rank: points descending, earlier accounts first on ties."""
        model = await self.get_model(address)
        if model is None:
            return None
        stmt = select(func.count()).select_from(UserLedgerModel).where(
            or_(
                UserLedgerModel.points > model.points,
                and_(
                    UserLedgerModel.points == model.points,
                    UserLedgerModel.created_at < model.created_at,
                ),
            )
        )
        ahead = (await self.session.execute(stmt)).scalar_one()
        return int(ahead) + 1

    async def list_top(self, *, offset: int = 0, limit: int = 20) -> list[LedgerDTO]:
        stmt = (
            select(UserLedgerModel)
            .order_by(UserLedgerModel.points.desc(), UserLedgerModel.created_at.asc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [LedgerDTO.from_model(m) for m in result.scalars().all()]

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(UserLedgerModel))
        return int(result.scalar_one())


class ActivityRepository:
    """Repository for the append-only activity log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(
        self,
        address: str,
        *,
        name: str,
        kind: str,
        points: int,
        date: datetime,
        intent_id: str | None = None,
        tx_hash: str | None = None,
        signal_id: str | None = None,
        referral_id: int | None = None,
        referred_user_address: str | None = None,
        original_trade_points: int | None = None,
        quest_id: int | None = None,
        usd_value: Decimal | None = None,
    ) -> ActivityDTO:
        model = ActivityModel(
            address=address.lower(),
            name=name,
            kind=kind,
            points=points,
            date=date,
            intent_id=intent_id,
            tx_hash=tx_hash,
            signal_id=signal_id,
            referral_id=referral_id,
            referred_user_address=referred_user_address.lower() if referred_user_address else None,
            original_trade_points=original_trade_points,
            quest_id=quest_id,
            usd_value=usd_value,
        )
        self.session.add(model)
        await self.session.flush()
        return ActivityDTO.from_model(model)

    async def list_for_address(
        self,
        address: str,
        *,
        offset: int = 0,
        limit: int = 20,
        newest_first: bool = True,
    ) -> list[ActivityDTO]:
        order = (
            (ActivityModel.date.desc(), ActivityModel.id.desc())
            if newest_first
            else (ActivityModel.date.asc(), ActivityModel.id.asc())
        )
        stmt = (
            select(ActivityModel)
            .where(ActivityModel.address == address.lower())
            .order_by(*order)
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [ActivityDTO.from_model(m) for m in result.scalars().all()]

    async def list_between(self, address: str, start: datetime, until: datetime) -> list[ActivityDTO]:
        """Activities for ``address`` with ``start <= date < until``, oldest first."""
        stmt = (
            select(ActivityModel)
            .where(
                ActivityModel.address == address.lower(),
                ActivityModel.date >= start,
                ActivityModel.date < until,
            )
            .order_by(ActivityModel.date.asc(), ActivityModel.id.asc())
        )
        result = await self.session.execute(stmt)
        return [ActivityDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_address(
        self,
        address: str,
        *,
        name: str | None = None,
        kind: str | None = None,
        with_signal: bool = False,
    ) -> int:
        stmt = select(func.count()).select_from(ActivityModel).where(ActivityModel.address == address.lower())
        if name is not None:
            stmt = stmt.where(ActivityModel.name == name)
        if kind is not None:
            stmt = stmt.where(ActivityModel.kind == kind)
        if with_signal:
            stmt = stmt.where(ActivityModel.signal_id.is_not(None))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def sum_points_for_address(self, address: str) -> int:
        stmt = select(func.coalesce(func.sum(ActivityModel.points), 0)).where(
            ActivityModel.address == address.lower()
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def tx_hash_exists(self, tx_hash: str) -> bool:
        stmt = select(ActivityModel.id).where(ActivityModel.tx_hash == tx_hash).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def weekly_totals(
        self,
        start: datetime,
        until: datetime,
        *,
        excluded_names: Iterable[str] = (),
    ) -> list[WeeklyActivityTotal]:
        """Aggregate scoring activity per address for ``start <= date < until``.

        Rows are ordered by weekly points descending, then ledger creation
        ascending. Addresses whose weekly sum is not positive are dropped.
        """
        weekly_points = func.sum(ActivityModel.points).label("weekly_points")
        weekly_activities = func.count(ActivityModel.id).label("weekly_activities")
        stmt = (
            select(
                ActivityModel.address,
                weekly_points,
                weekly_activities,
                UserLedgerModel.created_at,
            )
            .join(UserLedgerModel, UserLedgerModel.address == ActivityModel.address)
            .where(ActivityModel.date >= start, ActivityModel.date < until)
            .group_by(ActivityModel.address, UserLedgerModel.created_at)
            .having(func.sum(ActivityModel.points) > 0)
            .order_by(
                weekly_points.desc(),
                UserLedgerModel.created_at.asc(),
                ActivityModel.address.asc(),
            )
        )
        names = tuple(excluded_names)
        if names:
            stmt = stmt.where(ActivityModel.name.not_in(names))

        result = await self.session.execute(stmt)
        return [
            WeeklyActivityTotal(
                address=row.address,
                weekly_points=int(row.weekly_points),
                weekly_activities=int(row.weekly_activities),
                ledger_created_at=ensure_utc(row.created_at),
            )
            for row in result.all()
        ]


class WeeklyLeaderboardRepository:
    """Repository for archived weekly leaderboards."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _load(self, model: WeeklyLeaderboardModel) -> WeeklyLeaderboardDTO:
        entries = await self.session.execute(
            select(WeeklyLeaderboardEntryModel)
            .where(WeeklyLeaderboardEntryModel.leaderboard_id == model.id)
            .order_by(WeeklyLeaderboardEntryModel.rank.asc())
        )
        winners = await self.session.execute(
            select(WeeklyRaffleWinnerModel)
            .where(WeeklyRaffleWinnerModel.leaderboard_id == model.id)
            .order_by(WeeklyRaffleWinnerModel.draw_order.asc())
        )
        return WeeklyLeaderboardDTO.from_model(
            model,
            [LeaderboardEntryDTO.from_model(m) for m in entries.scalars().all()],
            [RaffleWinnerDTO.from_model(m) for m in winners.scalars().all()],
        )

    async def get(self, year: int, week_number: int) -> WeeklyLeaderboardDTO | None:
        result = await self.session.execute(
            select(WeeklyLeaderboardModel).where(
                WeeklyLeaderboardModel.year == year,
                WeeklyLeaderboardModel.week_number == week_number,
            )
        )
        model = result.scalar_one_or_none()
        return await self._load(model) if model else None

    async def exists(self, year: int, week_number: int) -> bool:
        result = await self.session.execute(
            select(WeeklyLeaderboardModel.id).where(
                WeeklyLeaderboardModel.year == year,
                WeeklyLeaderboardModel.week_number == week_number,
            )
        )
        return result.scalar_one_or_none() is not None

    async def insert(self, dto: WeeklyLeaderboardDTO) -> WeeklyLeaderboardDTO:
        """Insert a snapshot with its entries and winners.

        Raises:
            IntegrityError: If a snapshot for the same (year, week_number)
                already exists.
        """
        model = WeeklyLeaderboardModel(
            year=dto.year,
            week_number=dto.week_number,
            week_start=dto.week_start,
            week_end=dto.week_end,
            total_weekly_points=dto.total_weekly_points,
            total_participants=dto.total_participants,
        )
        self.session.add(model)
        await self.session.flush()

        self.session.add_all(
            WeeklyLeaderboardEntryModel(
                leaderboard_id=model.id,
                rank=e.rank,
                address=e.address,
                weekly_points=e.weekly_points,
                weekly_activities=e.weekly_activities,
                total_referred=e.total_referred,
                total_referral_points=e.total_referral_points,
                winning_chances=e.winning_chances,
            )
            for e in dto.entries
        )
        self.session.add_all(
            WeeklyRaffleWinnerModel(
                leaderboard_id=model.id,
                draw_order=i,
                address=w.address,
                rank=w.rank,
                weekly_points=w.weekly_points,
                winning_chances=w.winning_chances,
                prize_amount=w.prize_amount,
            )
            for i, w in enumerate(dto.raffle_winners, start=1)
        )
        await self.session.flush()

        dto.id = model.id
        dto.created_at = ensure_utc(model.created_at)
        return dto

    async def list_recent(self, *, offset: int = 0, limit: int = 10) -> list[WeeklyLeaderboardDTO]:
        result = await self.session.execute(
            select(WeeklyLeaderboardModel)
            .order_by(WeeklyLeaderboardModel.week_start.desc())
            .offset(offset)
            .limit(limit)
        )
        return [await self._load(m) for m in result.scalars().all()]

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(WeeklyLeaderboardModel))
        return int(result.scalar_one())

    async def user_history(
        self, address: str, *, offset: int = 0, limit: int = 10
    ) -> list[UserWeekHistoryDTO]:
        address = address.lower()
        stmt = (
            select(WeeklyLeaderboardModel, WeeklyLeaderboardEntryModel, WeeklyRaffleWinnerModel.prize_amount)
            .join(
                WeeklyLeaderboardEntryModel,
                WeeklyLeaderboardEntryModel.leaderboard_id == WeeklyLeaderboardModel.id,
            )
            .outerjoin(
                WeeklyRaffleWinnerModel,
                and_(
                    WeeklyRaffleWinnerModel.leaderboard_id == WeeklyLeaderboardModel.id,
                    WeeklyRaffleWinnerModel.address == WeeklyLeaderboardEntryModel.address,
                ),
            )
            .where(WeeklyLeaderboardEntryModel.address == address)
            .order_by(WeeklyLeaderboardModel.week_start.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            UserWeekHistoryDTO(
                year=board.year,
                week_number=board.week_number,
                week_start=ensure_utc(board.week_start),
                week_end=ensure_utc(board.week_end),
                rank=entry.rank,
                weekly_points=entry.weekly_points,
                winning_chances=entry.winning_chances,
                total_participants=board.total_participants,
                is_winner=prize is not None,
                prize_amount=prize or 0,
            )
            for board, entry, prize in result.all()
        ]

    async def count_user_history(self, address: str) -> int:
        stmt = (
            select(func.count())
            .select_from(WeeklyLeaderboardEntryModel)
            .where(WeeklyLeaderboardEntryModel.address == address.lower())
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class ReferralRepository:
    """Repository for referral codes and referred users."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_code(self, code: str) -> ReferralDTO | None:
        result = await self.session.execute(select(ReferralModel).where(ReferralModel.code == code.upper()))
        model = result.scalar_one_or_none()
        return ReferralDTO.from_model(model) if model else None

    async def get_by_referrer(self, address: str) -> ReferralDTO | None:
        result = await self.session.execute(
            select(ReferralModel).where(ReferralModel.referrer_address == address.lower())
        )
        model = result.scalar_one_or_none()
        return ReferralDTO.from_model(model) if model else None

    async def get_by_id(self, referral_id: int) -> ReferralDTO | None:
        model = await self.session.get(ReferralModel, referral_id)
        return ReferralDTO.from_model(model) if model else None

    async def create(self, address: str, code: str, *, now: datetime) -> ReferralDTO:
        model = ReferralModel(
            referrer_address=address.lower(),
            code=code.upper(),
            total_points_earned=0,
            created_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        return ReferralDTO.from_model(model)

    async def get_referred_user(self, address: str) -> ReferredUserDTO | None:
        result = await self.session.execute(
            select(ReferredUserModel).where(ReferredUserModel.address == address.lower())
        )
        model = result.scalar_one_or_none()
        return ReferredUserDTO.from_model(model) if model else None

    async def count_referred(self, referral_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(ReferredUserModel)
            .where(ReferredUserModel.referral_id == referral_id)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def add_referred_user(
        self,
        referral_id: int,
        address: str,
        *,
        points_earned: int,
        joined_at: datetime,
    ) -> ReferredUserDTO:
        model = ReferredUserModel(
            referral_id=referral_id,
            address=address.lower(),
            points_earned=points_earned,
            joined_at=joined_at,
        )
        self.session.add(model)
        await self.session.execute(
            update(ReferralModel)
            .where(ReferralModel.id == referral_id)
            .values(total_points_earned=ReferralModel.total_points_earned + points_earned)
        )
        await self.session.flush()
        return ReferredUserDTO.from_model(model)

    async def credit_referred_user(self, referral_id: int, address: str, points: int) -> None:
        """Add trade-bonus points to a referred user and their referral total."""
        await self.session.execute(
            update(ReferredUserModel)
            .where(
                ReferredUserModel.referral_id == referral_id,
                ReferredUserModel.address == address.lower(),
            )
            .values(points_earned=ReferredUserModel.points_earned + points)
        )
        await self.session.execute(
            update(ReferralModel)
            .where(ReferralModel.id == referral_id)
            .values(total_points_earned=ReferralModel.total_points_earned + points)
        )
        await self.session.flush()

    async def list_referred(
        self, referral_id: int, *, offset: int = 0, limit: int = 10
    ) -> list[ReferredUserDTO]:
        result = await self.session.execute(
            select(ReferredUserModel)
            .where(ReferredUserModel.referral_id == referral_id)
            .order_by(ReferredUserModel.joined_at.desc(), ReferredUserModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [ReferredUserDTO.from_model(m) for m in result.scalars().all()]

    async def weekly_stats(
        self,
        addresses: Iterable[str],
        start: datetime,
        until: datetime,
    ) -> dict[str, tuple[int, int]]:
        """Referred-user count and awarded points per referrer for joins in the window."""
        wanted = [a.lower() for a in addresses]
        if not wanted:
            return {}
        stmt = (
            select(
                ReferralModel.referrer_address,
                func.count(ReferredUserModel.id),
                func.coalesce(func.sum(ReferredUserModel.points_earned), 0),
            )
            .join(ReferredUserModel, ReferredUserModel.referral_id == ReferralModel.id)
            .where(
                ReferralModel.referrer_address.in_(wanted),
                ReferredUserModel.joined_at >= start,
                ReferredUserModel.joined_at < until,
            )
            .group_by(ReferralModel.referrer_address)
        )
        result = await self.session.execute(stmt)
        return {addr: (int(count), int(points)) for addr, count, points in result.all()}


class QuestRepository:
    """Repository for daily and lifetime quests."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add_daily_quest(self, dto: DailyQuestDTO) -> DailyQuestDTO:
        model = DailyQuestModel(
            name=dto.name,
            description=dto.description,
            image=dto.image,
            quest_type=dto.quest_type,
            requirement=dto.requirement,
            reward_type=dto.reward_type,
            reward_amount=dto.reward_amount,
            level=dto.level,
            quest_order=dto.quest_order,
            is_active=dto.is_active,
        )
        self.session.add(model)
        await self.session.flush()
        dto.id = model.id
        return dto

    async def list_active_daily_quests(self) -> list[DailyQuestModel]:
        result = await self.session.execute(
            select(DailyQuestModel)
            .where(DailyQuestModel.is_active.is_(True))
            .order_by(DailyQuestModel.quest_order.asc(), DailyQuestModel.id.asc())
        )
        return list(result.scalars().all())

    async def list_user_daily_quests(
        self, address: str, quest_date: date
    ) -> list[tuple[UserDailyQuestModel, DailyQuestModel]]:
        result = await self.session.execute(
            select(UserDailyQuestModel, DailyQuestModel)
            .join(DailyQuestModel, DailyQuestModel.id == UserDailyQuestModel.quest_id)
            .where(
                UserDailyQuestModel.address == address.lower(),
                UserDailyQuestModel.quest_date == quest_date,
            )
            .order_by(UserDailyQuestModel.quest_order.asc(), UserDailyQuestModel.id.asc())
        )
        return [(udq, quest) for udq, quest in result.all()]

    async def add_user_daily_quest(
        self,
        address: str,
        quest: DailyQuestModel,
        *,
        quest_date: date,
        quest_order: int,
        now: datetime,
    ) -> UserDailyQuestModel:
        model = UserDailyQuestModel(
            quest_id=quest.id,
            address=address.lower(),
            quest_date=quest_date,
            quest_order=quest_order,
            current_progress=0.0,
            is_completed=False,
            last_progress_update=now,
            created_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        return model

    async def get_user_daily_quest(
        self, address: str, quest_id: int, quest_date: date
    ) -> tuple[UserDailyQuestModel, DailyQuestModel] | None:
        result = await self.session.execute(
            select(UserDailyQuestModel, DailyQuestModel)
            .join(DailyQuestModel, DailyQuestModel.id == UserDailyQuestModel.quest_id)
            .where(
                UserDailyQuestModel.address == address.lower(),
                UserDailyQuestModel.quest_id == quest_id,
                UserDailyQuestModel.quest_date == quest_date,
            )
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def list_completed_daily(
        self, address: str, *, offset: int = 0, limit: int = 10
    ) -> list[tuple[UserDailyQuestModel, DailyQuestModel]]:
        result = await self.session.execute(
            select(UserDailyQuestModel, DailyQuestModel)
            .join(DailyQuestModel, DailyQuestModel.id == UserDailyQuestModel.quest_id)
            .where(
                UserDailyQuestModel.address == address.lower(),
                UserDailyQuestModel.is_completed.is_(True),
            )
            .order_by(UserDailyQuestModel.completed_at.desc(), UserDailyQuestModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [(udq, quest) for udq, quest in result.all()]

    async def count_completed_daily(self, address: str) -> int:
        stmt = (
            select(func.count())
            .select_from(UserDailyQuestModel)
            .where(
                UserDailyQuestModel.address == address.lower(),
                UserDailyQuestModel.is_completed.is_(True),
            )
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def add_quest(self, dto: QuestDTO) -> QuestDTO:
        model = QuestModel(
            name=dto.name,
            description=dto.description,
            image=dto.image,
            quest_type=dto.quest_type,
            requirement=dto.requirement,
            reward_type=dto.reward_type,
            reward_amount=dto.reward_amount,
        )
        self.session.add(model)
        await self.session.flush()
        dto.id = model.id
        return dto

    async def list_quests(self) -> list[QuestModel]:
        result = await self.session.execute(
            select(QuestModel).order_by(QuestModel.requirement.asc(), QuestModel.id.asc())
        )
        return list(result.scalars().all())

    async def get_quest(self, quest_id: int) -> QuestModel | None:
        return await self.session.get(QuestModel, quest_id)

    async def list_user_quests(self, address: str) -> dict[int, UserQuestModel]:
        result = await self.session.execute(
            select(UserQuestModel).where(UserQuestModel.address == address.lower())
        )
        return {m.quest_id: m for m in result.scalars().all()}

    async def get_or_create_user_quest(self, address: str, quest_id: int, *, now: datetime) -> UserQuestModel:
        result = await self.session.execute(
            select(UserQuestModel).where(
                UserQuestModel.address == address.lower(),
                UserQuestModel.quest_id == quest_id,
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = UserQuestModel(
                quest_id=quest_id,
                address=address.lower(),
                is_completed=False,
                created_at=now,
            )
            self.session.add(model)
            await self.session.flush()
        return model
