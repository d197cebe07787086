"""Daily and lifetime quest tracking and claims."""

from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from gorillionaire_ledger.ledger.errors import ConflictError, NotFoundError
from gorillionaire_ledger.ledger.models import (
    DAILY_QUEST_COMPLETED,
    QUEST_COMPLETED,
    SIGNAL_REFUSED,
    ActivityKind,
    ActivityRequest,
    Page,
    RecordResult,
)
from gorillionaire_ledger.ledger.notifier import truncate_address
from gorillionaire_ledger.ledger.service import ActivityLedger, normalize_address, validate_page
from gorillionaire_ledger.quests.progress import (
    DEFAULT_DAILY_QUESTS,
    LifetimeQuestType,
    daily_metrics,
    day_window,
    progress_percentage,
    tiered_progress,
)
from gorillionaire_ledger.storage.models import UserDailyQuestModel, UserLedgerModel
from gorillionaire_ledger.storage.repos import (
    ActivityRepository,
    DailyQuestDTO,
    LedgerRepository,
    QuestDTO,
    QuestRepository,
    ensure_utc,
)

logger = logging.getLogger(__name__)


def _optional_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


@dataclass
class DailyQuestProgress:
    """A user's state on one daily quest for one UTC day."""

    quest: DailyQuestDTO
    quest_date: date
    quest_order: int
    current_progress: float
    is_completed: bool
    completed_at: datetime | None = None
    claimed_at: datetime | None = None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None

    @property
    def progress_percentage(self) -> int:
        return progress_percentage(self.current_progress, self.quest.requirement)

    @classmethod
    def from_rows(cls, udq: UserDailyQuestModel, quest: DailyQuestDTO) -> DailyQuestProgress:
        return cls(
            quest=quest,
            quest_date=udq.quest_date,
            quest_order=udq.quest_order,
            current_progress=udq.current_progress,
            is_completed=udq.is_completed,
            completed_at=_optional_utc(udq.completed_at),
            claimed_at=_optional_utc(udq.claimed_at),
        )


@dataclass
class LifetimeQuestProgress:
    """A user's state on one lifetime quest."""

    quest: QuestDTO
    current_progress: int
    is_completed: bool
    claimed_at: datetime | None = None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None

    @property
    def progress_percentage(self) -> int:
        return progress_percentage(self.current_progress, self.quest.requirement)


@dataclass(frozen=True)
class QuestClaim:
    """Outcome of a successful quest claim."""

    quest_id: int
    quest_name: str
    reward_amount: int
    claimed_at: datetime
    record: RecordResult


class QuestProgressTracker:
    """Computes quest progress from the activity log and grants rewards.

    Daily quests consume their metric in tiers per quest type, ordered by
    ``quest_order``. Lifetime quests are independent thresholds. Claims
    go through ``ActivityLedger.apply`` inside the ledger's transaction,
    so the claim flag and the reward commit together.
    """

    def __init__(self, ledger: ActivityLedger) -> None:
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Daily quests
    # ------------------------------------------------------------------

    async def _refresh_daily(
        self, session: AsyncSession, ledger: UserLedgerModel, now: datetime
    ) -> list[DailyQuestProgress]:
        quests = QuestRepository(session)
        quest_date, day_start, day_end = day_window(now)

        rows = await quests.list_user_daily_quests(ledger.address, quest_date)
        if not rows:
            for order, quest in enumerate(await quests.list_active_daily_quests(), start=1):
                udq = await quests.add_user_daily_quest(
                    ledger.address, quest, quest_date=quest_date, quest_order=order, now=now
                )
                rows.append((udq, quest))
            if rows:
                logger.debug(
                    "Materialized %d daily quest(s) for %s on %s",
                    len(rows),
                    truncate_address(ledger.address),
                    quest_date,
                )

        activities = await ActivityRepository(session).list_between(ledger.address, day_start, day_end)
        metrics = daily_metrics(activities, streak=ledger.streak)

        by_type: dict[str, list[int]] = defaultdict(list)
        for index, (_, quest) in enumerate(rows):
            by_type[quest.quest_type].append(index)

        for quest_type, indexes in by_type.items():
            indexes.sort(key=lambda i: (rows[i][0].quest_order, rows[i][0].id))
            requirements = [rows[i][1].requirement for i in indexes]
            for i, progress in zip(
                indexes, tiered_progress(metrics.value_for(quest_type), requirements), strict=True
            ):
                udq, quest = rows[i]
                if progress != udq.current_progress:
                    udq.current_progress = float(progress)
                    udq.last_progress_update = now
                if not udq.is_completed and progress >= quest.requirement:
                    udq.is_completed = True
                    udq.completed_at = now

        await session.flush()
        progress_list = [DailyQuestProgress.from_rows(udq, DailyQuestDTO.from_model(q)) for udq, q in rows]
        progress_list.sort(key=lambda p: p.quest_order)
        return progress_list

    async def _require_ledger(
        self, session: AsyncSession, address: str, *, for_update: bool = True
    ) -> UserLedgerModel:
        ledger = await LedgerRepository(session).get_model(address, for_update=for_update)
        if ledger is None:
            raise NotFoundError(f"No ledger for {truncate_address(address)}")
        return ledger

    async def get_daily_quests(self, address: str, now: datetime | None = None) -> list[DailyQuestProgress]:
        """Today's daily quests for ``address`` with fresh progress.

        Rows for the day are created from the active quest definitions on
        first access.

        Raises:
            NotFoundError: The address has no ledger.
        """
        normalized = normalize_address(address)
        now = now or self._ledger.now()
        async with self._ledger.transaction(normalized) as session:
            ledger = await self._require_ledger(session, normalized)
            return await self._refresh_daily(session, ledger, now)

    async def claim_daily_quest(
        self, address: str, quest_id: int, now: datetime | None = None
    ) -> QuestClaim:
        """Claim the reward of a completed daily quest for today.

        Raises:
            NotFoundError: No ledger, or the quest is not assigned today.
            ConflictError: Not completed yet, or already claimed.
        """
        normalized = normalize_address(address)
        now = now or self._ledger.now()
        quest_date, _, _ = day_window(now)

        async with self._ledger.transaction(normalized) as session:
            ledger = await self._require_ledger(session, normalized)
            await self._refresh_daily(session, ledger, now)

            row = await QuestRepository(session).get_user_daily_quest(normalized, quest_id, quest_date)
            if row is None:
                raise NotFoundError(f"Daily quest {quest_id} not found for {quest_date}")
            udq, quest = row
            if not udq.is_completed:
                raise ConflictError("Quest is not completed yet")
            if udq.claimed_at is not None:
                raise ConflictError("Quest reward already claimed")

            udq.claimed_at = now
            record = await self._ledger.apply(
                session,
                ActivityRequest(
                    address=normalized,
                    name=DAILY_QUEST_COMPLETED.format(quest_name=quest.name),
                    points=quest.reward_amount,
                    kind=ActivityKind.QUEST_COMPLETION,
                    metadata={"quest_id": quest.id},
                    create_if_missing=False,
                    apply_streak=False,
                ),
                occurred_at=now,
            )
            claim = QuestClaim(
                quest_id=quest.id,
                quest_name=quest.name,
                reward_amount=quest.reward_amount,
                claimed_at=now,
                record=record,
            )

        logger.info(
            "Daily quest '%s' claimed by %s: +%d",
            claim.quest_name,
            truncate_address(normalized),
            claim.reward_amount,
        )
        self._ledger.publish(claim.record)
        return claim

    async def list_completed_daily_quests(
        self, address: str, *, page: int = 1, limit: int = 10
    ) -> Page[DailyQuestProgress]:
        """Completed daily quests across all days, most recent first."""
        normalized = normalize_address(address)
        offset, limit = validate_page(page, limit)
        async with self._ledger.session() as session:
            if await LedgerRepository(session).get(normalized) is None:
                raise NotFoundError(f"No ledger for {truncate_address(normalized)}")
            repo = QuestRepository(session)
            rows = await repo.list_completed_daily(normalized, offset=offset, limit=limit)
            total = await repo.count_completed_daily(normalized)
            items = [DailyQuestProgress.from_rows(udq, DailyQuestDTO.from_model(q)) for udq, q in rows]
        return Page(items=items, total=total, page=page, limit=limit)

    async def seed_daily_quests(
        self, definitions: Iterable[DailyQuestDTO] = DEFAULT_DAILY_QUESTS
    ) -> list[DailyQuestDTO]:
        """Install daily quest definitions when none exist yet.

        Returns the installed definitions; an empty list when quests were
        already present.
        """
        async with self._ledger.session() as session:
            repo = QuestRepository(session)
            if await repo.list_active_daily_quests():
                logger.info("Daily quests already seeded; skipping")
                return []
            installed = [await repo.add_daily_quest(dataclasses.replace(d, id=None)) for d in definitions]
            await session.commit()
        logger.info("Seeded %d daily quest(s)", len(installed))
        return installed

    # ------------------------------------------------------------------
    # Lifetime quests
    # ------------------------------------------------------------------

    async def _lifetime_metric(self, session: AsyncSession, ledger: UserLedgerModel, quest_type: str) -> int:
        activities = ActivityRepository(session)
        if quest_type == LifetimeQuestType.ACCEPTED_SIGNALS.value:
            return await activities.count_for_address(
                ledger.address, kind=ActivityKind.TRADE.value, with_signal=True
            )
        if quest_type == LifetimeQuestType.REFUSE_SIGNALS.value:
            return await activities.count_for_address(ledger.address, name=SIGNAL_REFUSED)
        if quest_type == LifetimeQuestType.STREAK_SIGNALS.value:
            return ledger.streak
        return 0

    async def get_lifetime_quests(self, address: str) -> list[LifetimeQuestProgress]:
        """Every lifetime quest with the user's progress, easiest first.

        Raises:
            NotFoundError: The address has no ledger.
        """
        normalized = normalize_address(address)
        async with self._ledger.session() as session:
            ledger = await self._require_ledger(session, normalized, for_update=False)
            repo = QuestRepository(session)
            user_quests = await repo.list_user_quests(normalized)
            metrics: dict[str, int] = {}
            result: list[LifetimeQuestProgress] = []
            for quest in await repo.list_quests():
                if quest.quest_type not in metrics:
                    metrics[quest.quest_type] = await self._lifetime_metric(session, ledger, quest.quest_type)
                progress = min(metrics[quest.quest_type], quest.requirement)
                user_quest = user_quests.get(quest.id)
                result.append(
                    LifetimeQuestProgress(
                        quest=QuestDTO.from_model(quest),
                        current_progress=progress,
                        is_completed=progress >= quest.requirement
                        or (user_quest is not None and user_quest.is_completed),
                        claimed_at=_optional_utc(user_quest.claimed_at) if user_quest else None,
                    )
                )
        return result

    async def claim_lifetime_quest(self, address: str, quest_id: int) -> QuestClaim:
        """Claim the reward of a completed lifetime quest.

        Raises:
            NotFoundError: No ledger, or no such quest.
            ConflictError: Not completed yet, or already claimed.
        """
        normalized = normalize_address(address)
        now = self._ledger.now()

        async with self._ledger.transaction(normalized) as session:
            ledger = await self._require_ledger(session, normalized)
            repo = QuestRepository(session)
            quest = await repo.get_quest(quest_id)
            if quest is None:
                raise NotFoundError(f"Quest {quest_id} not found")

            user_quest = await repo.get_or_create_user_quest(normalized, quest.id, now=now)
            if user_quest.claimed_at is not None:
                raise ConflictError("Quest reward already claimed")
            if not user_quest.is_completed:
                metric = await self._lifetime_metric(session, ledger, quest.quest_type)
                if metric < quest.requirement:
                    raise ConflictError("Quest is not completed yet")
                user_quest.is_completed = True
                user_quest.completed_at = now

            user_quest.claimed_at = now
            record = await self._ledger.apply(
                session,
                ActivityRequest(
                    address=normalized,
                    name=QUEST_COMPLETED.format(quest_name=quest.name),
                    points=quest.reward_amount,
                    kind=ActivityKind.QUEST_COMPLETION,
                    metadata={"quest_id": quest.id},
                    create_if_missing=False,
                    apply_streak=False,
                ),
                occurred_at=now,
            )
            claim = QuestClaim(
                quest_id=quest.id,
                quest_name=quest.name,
                reward_amount=quest.reward_amount,
                claimed_at=now,
                record=record,
            )

        logger.info(
            "Quest '%s' claimed by %s: +%d", claim.quest_name, truncate_address(normalized), claim.reward_amount
        )
        self._ledger.publish(claim.record)
        return claim
