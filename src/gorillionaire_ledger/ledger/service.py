"""Activity ledger: atomic point and streak mutation per wallet address.

Every mutation of a ledger runs inside ``ActivityLedger.transaction``,
which serializes work on the same address in-process with an
``asyncio.Lock`` and relies on the ledger row's version counter to detect
writers in other processes. Different addresses never share a lock.
"""

from __future__ import annotations

import asyncio
import logging
import math
import weakref
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from gorillionaire_ledger.ledger.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from gorillionaire_ledger.ledger.models import (
    ACCOUNT_CONNECTED,
    METADATA_FIELDS,
    STREAK_EXTENDED,
    ActivityKind,
    ActivityRequest,
    Page,
    RecordResult,
    infer_kind,
)
from gorillionaire_ledger.ledger.notifier import NotificationDispatcher, truncate_address
from gorillionaire_ledger.ledger.retry import with_retry
from gorillionaire_ledger.ledger.streak import StreakEngine
from gorillionaire_ledger.storage.models import UserLedgerModel
from gorillionaire_ledger.storage.repos import (
    ActivityDTO,
    ActivityRepository,
    LedgerDTO,
    LedgerRepository,
    ensure_utc,
)

logger = logging.getLogger(__name__)

MAX_ADDRESS_LENGTH = 42
MAX_NAME_LENGTH = 128
DEFAULT_SIGN_IN_POINTS = 50
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_address(address: object) -> str:
    """Validate and lowercase a wallet address."""
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("address must be a non-empty string")
    normalized = address.strip().lower()
    if len(normalized) > MAX_ADDRESS_LENGTH:
        raise ValidationError(f"address must be at most {MAX_ADDRESS_LENGTH} characters")
    return normalized


def validate_points(points: object) -> int:
    """Validate a point amount: finite, non-negative and whole."""
    if isinstance(points, bool) or not isinstance(points, (int, float, Decimal)):
        raise ValidationError("points must be a number")
    if isinstance(points, float) and not math.isfinite(points):
        raise ValidationError("points must be finite")
    if isinstance(points, Decimal) and not points.is_finite():
        raise ValidationError("points must be finite")
    if points < 0:
        raise ValidationError("points must be >= 0")
    if points != int(points):
        raise ValidationError("points must be a whole number")
    return int(points)


def parse_usd_value(value: object) -> Decimal:
    """Parse a trade's USD value: finite and non-negative."""
    if isinstance(value, bool):
        raise ValidationError("usd_value must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError("usd_value must be a number") from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError("usd_value must be a finite, non-negative number")
    return amount


def validate_page(page: int, limit: int) -> tuple[int, int]:
    """Validate pagination and return ``(offset, limit)``."""
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    return (page - 1) * limit, limit


class ActivityLedger:
    """Owns every mutation of user ledgers.

    Example:
        ```python
        ledger = ActivityLedger(db.session_factory, dispatcher=dispatcher)
        result = await ledger.record_activity("0xabc...", "Trade", 42, {"tx_hash": "0x..."})
        print(result.new_streak, result.total_points)
        ```

    Callers that must combine a ledger mutation with writes of their own
    (quest claims, referrals) open ``transaction(address)``, call
    ``apply`` with the yielded session and call ``publish`` once the
    transaction has committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        streak_engine: StreakEngine | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        sign_in_points: int = DEFAULT_SIGN_IN_POINTS,
    ) -> None:
        self._session_factory = session_factory
        self._streak = streak_engine or StreakEngine()
        self._dispatcher = dispatcher or NotificationDispatcher()
        self._clock = clock or _utcnow
        self._sign_in_points = sign_in_points
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def streak_engine(self) -> StreakEngine:
        return self._streak

    def now(self) -> datetime:
        """Current time from the injected clock, as aware UTC."""
        value = self._clock()
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read-only session with storage errors translated."""
        async with self._session_factory() as session:
            try:
                yield session
            except (OperationalError, InterfaceError, TimeoutError) as e:
                raise TransientInfrastructureError(f"Storage unavailable: {e}", last_exception=e) from e

    @asynccontextmanager
    async def transaction(self, address: str) -> AsyncIterator[AsyncSession]:
        """Open the atomic unit of work for one ledger address.

        Commits when the block exits normally; rolls back everything on
        any exception.

        Raises:
            ConflictError: A uniqueness constraint rejected the write.
            TransientInfrastructureError: Storage was unavailable or a
                concurrent writer updated the ledger first.
        """
        address = normalize_address(address)
        lock = self._lock_for(address)
        async with lock:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except LedgerError:
                    await session.rollback()
                    raise
                except StaleDataError as e:
                    await session.rollback()
                    raise TransientInfrastructureError(
                        f"Concurrent update of ledger {truncate_address(address)}", last_exception=e
                    ) from e
                except IntegrityError as e:
                    await session.rollback()
                    raise ConflictError(f"Duplicate write for {truncate_address(address)}") from e
                except (OperationalError, InterfaceError, TimeoutError) as e:
                    await session.rollback()
                    raise TransientInfrastructureError(f"Storage unavailable: {e}", last_exception=e) from e
                except DBAPIError as e:
                    await session.rollback()
                    if e.connection_invalidated:
                        raise TransientInfrastructureError(
                            f"Storage connection lost: {e}", last_exception=e
                        ) from e
                    raise
                except BaseException:
                    await session.rollback()
                    raise

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def build_request(
        self,
        address: object,
        activity_name: object,
        points: object,
        metadata: Mapping[str, Any] | None = None,
        *,
        kind: ActivityKind | None = None,
        create_if_missing: bool = True,
        apply_streak: bool = True,
    ) -> ActivityRequest:
        """Validate raw inputs into an ``ActivityRequest``.

        Raises:
            ValidationError: If any input is malformed.
        """
        normalized = normalize_address(address)
        if not isinstance(activity_name, str) or not activity_name.strip():
            raise ValidationError("activity name must be a non-empty string")
        name = activity_name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"activity name must be at most {MAX_NAME_LENGTH} characters")
        amount = validate_points(points)

        extra = dict(metadata or {})
        unknown = set(extra) - METADATA_FIELDS
        if unknown:
            raise ValidationError(f"unknown metadata fields: {', '.join(sorted(unknown))}")
        if "usd_value" in extra and extra["usd_value"] is not None:
            extra["usd_value"] = parse_usd_value(extra["usd_value"])

        return ActivityRequest(
            address=normalized,
            name=name,
            points=amount,
            kind=kind or infer_kind(name),
            metadata=extra,
            create_if_missing=create_if_missing,
            apply_streak=apply_streak,
        )

    async def _load_or_create(
        self, session: AsyncSession, address: str, *, create_if_missing: bool, now: datetime
    ) -> tuple[UserLedgerModel, bool]:
        ledgers = LedgerRepository(session)
        if create_if_missing:
            return await ledgers.get_or_create(address, now=now)
        ledger = await ledgers.get_model(address, for_update=True)
        if ledger is None:
            raise NotFoundError(f"No ledger for {truncate_address(address)}")
        return ledger, False

    async def _touch_streak(
        self, session: AsyncSession, ledger: UserLedgerModel, now: datetime
    ) -> tuple[int, bool]:
        outcome = self._streak.evaluate(ledger.streak, ledger.streak_last_update, now)
        if not outcome.changed:
            return 0, False

        ledger.streak = outcome.streak
        ledger.streak_last_update = outcome.last_update
        ledger.points += outcome.bonus_xp
        await ActivityRepository(session).add(
            ledger.address,
            name=STREAK_EXTENDED,
            kind=ActivityKind.STREAK_BONUS.value,
            points=outcome.bonus_xp,
            date=now,
        )
        logger.debug(
            "Streak %s for %s: %d (+%d XP)",
            outcome.transition.value,
            truncate_address(ledger.address),
            outcome.streak,
            outcome.bonus_xp,
        )
        return outcome.bonus_xp, True

    async def apply(
        self,
        session: AsyncSession,
        request: ActivityRequest,
        *,
        occurred_at: datetime | None = None,
    ) -> RecordResult:
        """Apply one activity inside a caller-owned transaction.

        Creates the ledger if allowed, appends the base record, adds its
        points and runs the streak engine. Nothing is committed here.
        ``occurred_at`` dates the records; it defaults to the ledger clock.

        Raises:
            NotFoundError: The ledger is absent and ``create_if_missing`` is False.
        """
        now = ensure_utc(occurred_at) if occurred_at is not None else self.now()
        ledger, created = await self._load_or_create(
            session, request.address, create_if_missing=request.create_if_missing, now=now
        )

        await ActivityRepository(session).add(
            request.address,
            name=request.name,
            kind=request.kind.value,
            points=request.points,
            date=now,
            **request.metadata,
        )
        ledger.points += request.points

        bonus, streak_changed = 0, False
        if request.apply_streak:
            bonus, streak_changed = await self._touch_streak(session, ledger, now)

        ledger.updated_at = now
        await session.flush()

        return RecordResult(
            address=request.address,
            activity_name=request.name,
            points_awarded=request.points,
            streak_bonus_awarded=bonus,
            new_streak=ledger.streak,
            streak_last_update=ledger.streak_last_update,
            streak_changed=streak_changed,
            total_points=ledger.points,
            created=created,
            occurred_at=now,
        )

    def publish(self, result: RecordResult) -> None:
        """Schedule notifications for a committed mutation. Never raises."""
        try:
            self._dispatcher.publish(result)
        except Exception as e:
            logger.warning("Failed to schedule notifications for %s: %s", truncate_address(result.address), e)

    @with_retry()
    async def _commit(self, request: ActivityRequest) -> RecordResult:
        async with self.transaction(request.address) as session:
            return await self.apply(session, request)

    async def record_activity(
        self,
        address: str,
        activity_name: str,
        points: int | float | Decimal,
        metadata: Mapping[str, Any] | None = None,
        *,
        kind: ActivityKind | None = None,
        create_if_missing: bool = True,
        apply_streak: bool = True,
    ) -> RecordResult:
        """Atomically append an activity, add its points and update the streak.

        Args:
            address: Wallet address (case-insensitive).
            activity_name: Activity label.
            points: Finite, non-negative, whole number of points.
            metadata: Correlation fields (intent_id, tx_hash, signal_id, ...).
            kind: Activity category; inferred from the name when omitted.
            create_if_missing: Create the ledger when absent. When False an
                absent ledger raises ``NotFoundError``.
            apply_streak: Run the streak engine for this activity.

        Returns:
            RecordResult with the new streak, points and streak bonus awarded.

        Raises:
            ValidationError: Malformed inputs. Nothing is written.
            NotFoundError: Ledger absent in a must-exist flow.
            ConflictError: A uniqueness constraint (e.g. tx hash) rejected the write.
            TransientInfrastructureError: Storage failure after retries. Safe to retry.
        """
        request = self.build_request(
            address,
            activity_name,
            points,
            metadata,
            kind=kind,
            create_if_missing=create_if_missing,
            apply_streak=apply_streak,
        )
        result = await self._commit(request)
        logger.info(
            "Recorded '%s' for %s: +%d (+%d streak bonus), total=%d",
            result.activity_name,
            truncate_address(result.address),
            result.points_awarded,
            result.streak_bonus_awarded,
            result.total_points,
        )
        self.publish(result)
        return result

    @with_retry()
    async def _sign_in(self, address: str) -> RecordResult:
        async with self.transaction(address) as session:
            now = self.now()
            existing, created = await LedgerRepository(session).get_or_create(address, now=now)
            if created:
                result = await self.apply(
                    session,
                    ActivityRequest(
                        address=address,
                        name=ACCOUNT_CONNECTED,
                        points=self._sign_in_points,
                        kind=ActivityKind.SIGN_IN,
                    ),
                    occurred_at=now,
                )
                existing.last_sign_in = now
                await session.flush()
                return replace(result, created=True)

            bonus, changed = await self._touch_streak(session, existing, now)
            existing.last_sign_in = now
            existing.updated_at = now
            await session.flush()
            return RecordResult(
                address=address,
                activity_name="Sign In",
                points_awarded=0,
                streak_bonus_awarded=bonus,
                new_streak=existing.streak,
                streak_last_update=existing.streak_last_update,
                streak_changed=changed,
                total_points=existing.points,
                created=False,
                occurred_at=now,
            )

    async def sign_in(self, address: str) -> RecordResult:
        """Record a sign-in.

        The first sign-in creates the ledger with an "Account Connected"
        activity. Later sign-ins only update ``last_sign_in`` and run the
        streak engine.
        """
        result = await self._sign_in(normalize_address(address))
        if result.created:
            logger.info("New account connected: %s", truncate_address(result.address))
        self.publish(result)
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ledger(self, address: str) -> LedgerDTO | None:
        async with self.session() as session:
            return await LedgerRepository(session).get(normalize_address(address))

    async def require_ledger(self, address: str) -> LedgerDTO:
        ledger = await self.get_ledger(address)
        if ledger is None:
            raise NotFoundError(f"No ledger for {truncate_address(normalize_address(address))}")
        return ledger

    async def list_activities(
        self, address: str, *, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT
    ) -> Page[ActivityDTO]:
        """Activities for ``address``, newest first."""
        normalized = normalize_address(address)
        offset, limit = validate_page(page, limit)
        async with self.session() as session:
            repo = ActivityRepository(session)
            items = await repo.list_for_address(normalized, offset=offset, limit=limit, newest_first=True)
            total = await repo.count_for_address(normalized)
        return Page(items=items, total=total, page=page, limit=limit)

    async def get_rank(self, address: str) -> int | None:
        """All-time rank of ``address`` or None when it has no ledger."""
        async with self.session() as session:
            return await LedgerRepository(session).rank(normalize_address(address))

    async def all_time_leaderboard(
        self, *, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT
    ) -> Page[LedgerDTO]:
        offset, limit = validate_page(page, limit)
        async with self.session() as session:
            repo = LedgerRepository(session)
            items = await repo.list_top(offset=offset, limit=limit)
            total = await repo.count()
        return Page(items=items, total=total, page=page, limit=limit)
