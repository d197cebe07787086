"""Referral codes and referral point bonuses."""

from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass, field

from gorillionaire_ledger.ledger.errors import ConflictError, NotFoundError, ValidationError
from gorillionaire_ledger.ledger.models import (
    REFERRAL_BONUS,
    REFERRAL_TRADE_BONUS,
    ActivityKind,
    ActivityRequest,
    Page,
    RecordResult,
)
from gorillionaire_ledger.ledger.notifier import truncate_address
from gorillionaire_ledger.ledger.service import ActivityLedger, normalize_address, validate_page
from gorillionaire_ledger.storage.repos import (
    ActivityRepository,
    ReferralDTO,
    ReferralRepository,
    ReferredUserDTO,
)

logger = logging.getLogger(__name__)

DEFAULT_REFERRAL_BONUS_POINTS = 100
DEFAULT_MAX_REWARDED_REFERRALS = 3
DEFAULT_TRADE_BONUS_RATE = 0.1
ELIGIBILITY_MAX_ACTIVITIES = 3
CODE_BYTES = 4
MAX_CODE_ATTEMPTS = 5


def generate_referral_code() -> str:
    """8 upper-case hex characters."""
    return secrets.token_hex(CODE_BYTES).upper()


@dataclass(frozen=True)
class ReferralOutcome:
    """Result of redeeming a referral code."""

    referrer_address: str
    referred_address: str
    points_awarded: int
    record: RecordResult


@dataclass
class ReferralStats:
    """Referral summary for a referrer."""

    address: str
    referral_code: str | None = None
    total_referred: int = 0
    total_points_earned: int = 0
    referred_users: list[ReferredUserDTO] = field(default_factory=list)


@dataclass(frozen=True)
class ReferralEligibility:
    """Whether an address may still redeem a referral code."""

    has_referrer: bool
    activities_count: int

    @property
    def is_eligible(self) -> bool:
        return not self.has_referrer and self.activities_count < ELIGIBILITY_MAX_ACTIVITIES


class ReferralService:
    """Referral code lifecycle and referrer rewards.

    Example:
        ```python
        referrals = ReferralService(ledger)
        code = (await referrals.generate_code("0xreferrer")).code
        outcome = await referrals.process_referral(code, "0xnewcomer")
        ```
    """

    def __init__(
        self,
        ledger: ActivityLedger,
        *,
        bonus_points: int = DEFAULT_REFERRAL_BONUS_POINTS,
        max_rewarded_referrals: int = DEFAULT_MAX_REWARDED_REFERRALS,
        trade_bonus_rate: float = DEFAULT_TRADE_BONUS_RATE,
    ) -> None:
        self._ledger = ledger
        self._bonus_points = bonus_points
        self._max_rewarded = max_rewarded_referrals
        self._trade_bonus_rate = trade_bonus_rate

    async def generate_code(self, address: str) -> ReferralDTO:
        """Return the address's referral code, creating one on first call."""
        normalized = normalize_address(address)
        try:
            async with self._ledger.transaction(normalized) as session:
                repo = ReferralRepository(session)
                existing = await repo.get_by_referrer(normalized)
                if existing is not None:
                    return existing
                for _ in range(MAX_CODE_ATTEMPTS):
                    code = generate_referral_code()
                    if await repo.get_by_code(code) is None:
                        break
                else:
                    raise ConflictError("Could not allocate a unique referral code")
                referral = await repo.create(normalized, code, now=self._ledger.now())
        except ConflictError:
            # Another process created the code first.
            async with self._ledger.session() as session:
                existing = await ReferralRepository(session).get_by_referrer(normalized)
            if existing is None:
                raise
            return existing

        logger.info("Referral code %s generated for %s", referral.code, truncate_address(normalized))
        return referral

    async def process_referral(self, code: str, new_user_address: str) -> ReferralOutcome:
        """Redeem ``code`` for ``new_user_address`` and reward the referrer.

        The first ``max_rewarded_referrals`` referrals earn the referrer
        ``bonus_points`` each; later ones are recorded with 0 points.

        Raises:
            ValidationError: Missing code or self-referral.
            NotFoundError: Unknown code, or the referrer has no ledger.
            ConflictError: The new user already has a referrer.
        """
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("referral code is required")
        referred = normalize_address(new_user_address)

        async with self._ledger.session() as session:
            referral = await ReferralRepository(session).get_by_code(code.strip())
        if referral is None:
            raise NotFoundError("Invalid referral code")
        if referral.referrer_address == referred:
            raise ValidationError("Cannot refer yourself")

        async with self._ledger.transaction(referral.referrer_address) as session:
            repo = ReferralRepository(session)
            if await repo.get_referred_user(referred) is not None:
                raise ConflictError("User already has a referrer")

            points = self._bonus_points if await repo.count_referred(referral.id) < self._max_rewarded else 0
            await repo.add_referred_user(referral.id, referred, points_earned=points, joined_at=self._ledger.now())
            record = await self._ledger.apply(
                session,
                ActivityRequest(
                    address=referral.referrer_address,
                    name=REFERRAL_BONUS,
                    points=points,
                    kind=ActivityKind.REFERRAL_BONUS,
                    metadata={"referral_id": referral.id, "referred_user_address": referred},
                    create_if_missing=False,
                    apply_streak=False,
                ),
            )

        logger.info(
            "Referral processed: %s referred %s (+%d)",
            truncate_address(referral.referrer_address),
            truncate_address(referred),
            points,
        )
        self._ledger.publish(record)
        return ReferralOutcome(
            referrer_address=referral.referrer_address,
            referred_address=referred,
            points_awarded=points,
            record=record,
        )

    def trade_bonus_for(self, trade_points: int) -> int:
        return math.ceil(trade_points * self._trade_bonus_rate)

    async def award_trade_bonus(self, trader_address: str, trade_points: int) -> RecordResult | None:
        """Credit the trader's referrer with a share of a trade's points.

        Returns None when the trader has no referrer, the bonus rounds to
        zero, or the referrer has no ledger.
        """
        trader = normalize_address(trader_address)
        bonus = self.trade_bonus_for(trade_points)
        if bonus <= 0:
            return None

        async with self._ledger.session() as session:
            repo = ReferralRepository(session)
            referred_user = await repo.get_referred_user(trader)
            referral = await repo.get_by_id(referred_user.referral_id) if referred_user else None
        if referral is None:
            return None

        try:
            async with self._ledger.transaction(referral.referrer_address) as session:
                record = await self._ledger.apply(
                    session,
                    ActivityRequest(
                        address=referral.referrer_address,
                        name=REFERRAL_TRADE_BONUS,
                        points=bonus,
                        kind=ActivityKind.REFERRAL_TRADE_BONUS,
                        metadata={
                            "referral_id": referral.id,
                            "referred_user_address": trader,
                            "original_trade_points": trade_points,
                        },
                        create_if_missing=False,
                        apply_streak=False,
                    ),
                )
                await ReferralRepository(session).credit_referred_user(referral.id, trader, bonus)
        except NotFoundError:
            logger.warning(
                "Referrer %s of %s has no ledger; trade bonus skipped",
                truncate_address(referral.referrer_address),
                truncate_address(trader),
            )
            return None

        logger.info(
            "Awarded %d referral trade bonus to %s for trade by %s",
            bonus,
            truncate_address(referral.referrer_address),
            truncate_address(trader),
        )
        self._ledger.publish(record)
        return record

    async def get_stats(self, address: str, *, limit: int = 10) -> ReferralStats:
        """Referral code, totals and the most recent referred users."""
        normalized = normalize_address(address)
        async with self._ledger.session() as session:
            repo = ReferralRepository(session)
            referral = await repo.get_by_referrer(normalized)
            if referral is None:
                return ReferralStats(address=normalized)
            return ReferralStats(
                address=normalized,
                referral_code=referral.code,
                total_referred=await repo.count_referred(referral.id),
                total_points_earned=referral.total_points_earned,
                referred_users=await repo.list_referred(referral.id, limit=limit),
            )

    async def list_referred(self, address: str, *, page: int = 1, limit: int = 10) -> Page[ReferredUserDTO]:
        normalized = normalize_address(address)
        offset, limit = validate_page(page, limit)
        async with self._ledger.session() as session:
            repo = ReferralRepository(session)
            referral = await repo.get_by_referrer(normalized)
            if referral is None:
                return Page(items=[], total=0, page=page, limit=limit)
            items = await repo.list_referred(referral.id, offset=offset, limit=limit)
            total = await repo.count_referred(referral.id)
        return Page(items=items, total=total, page=page, limit=limit)

    async def get_referrer(self, address: str) -> str | None:
        """Address that referred ``address``, if any."""
        normalized = normalize_address(address)
        async with self._ledger.session() as session:
            repo = ReferralRepository(session)
            referred_user = await repo.get_referred_user(normalized)
            if referred_user is None:
                return None
            referral = await repo.get_by_id(referred_user.referral_id)
        return referral.referrer_address if referral else None

    async def check_eligibility(self, address: str) -> ReferralEligibility:
        normalized = normalize_address(address)
        async with self._ledger.session() as session:
            has_referrer = await ReferralRepository(session).get_referred_user(normalized) is not None
            activities = await ActivityRepository(session).count_for_address(normalized)
        return ReferralEligibility(has_referrer=has_referrer, activities_count=activities)
