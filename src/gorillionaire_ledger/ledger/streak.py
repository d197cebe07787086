"""Daily streak state machine.

Pure calendar logic: given the stored streak, the stored last-update
timestamp and "now", decide how the streak moves and how much bonus XP the
move is worth. Both timestamps are normalized to UTC midnight before the
day difference is taken, so the caller's timezone never matters.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

DEFAULT_GRACE_PERIOD_HOURS = 6.0
DEFAULT_MAX_BONUS_DAYS = 365
DEFAULT_XP_MULTIPLIER = 10

SECONDS_PER_DAY = 24 * 60 * 60


class StreakTransition(str, Enum):
    """How the streak moves between the last update and today."""

    FIRST_TIME = "first_time"
    SAME_DAY = "same_day"
    CONSECUTIVE = "consecutive"
    GRACE_PERIOD = "grace_period"
    RESET = "reset"


def normalize_to_day(value: datetime) -> datetime:
    """Floor a timestamp to 00:00:00 UTC of its UTC calendar day.

    Naive datetimes are taken to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)


def day_difference(last_update: datetime, now: datetime) -> float:
    """Days between the normalized last update and the normalized ``now``."""
    delta = normalize_to_day(now) - normalize_to_day(last_update)
    return delta.total_seconds() / SECONDS_PER_DAY


@dataclass(frozen=True)
class StreakOutcome:
    """Result of evaluating the streak for one activity.

    Attributes:
        transition: Classified day transition.
        streak: Streak after the transition.
        last_update: Value to store as the streak's last update.
        bonus_xp: Bonus XP earned by the transition (0 when unchanged).
    """

    transition: StreakTransition
    streak: int
    last_update: datetime | None
    bonus_xp: int

    @property
    def changed(self) -> bool:
        return self.transition is not StreakTransition.SAME_DAY


class StreakEngine:
    """Classifies day transitions and prices streak bonuses.

    Example:
        ```python
        engine = StreakEngine()
        outcome = engine.evaluate(current_streak=1, last_update=yesterday, now=now)
        if outcome.changed:
            ledger.points += outcome.bonus_xp
        ```
    """

    def __init__(
        self,
        *,
        grace_period_hours: float = DEFAULT_GRACE_PERIOD_HOURS,
        max_bonus_days: int = DEFAULT_MAX_BONUS_DAYS,
        xp_multiplier: int = DEFAULT_XP_MULTIPLIER,
    ) -> None:
        if grace_period_hours < 0:
            raise ValueError("grace_period_hours must be >= 0")
        if max_bonus_days < 1:
            raise ValueError("max_bonus_days must be >= 1")
        self.grace_period_hours = grace_period_hours
        self.max_bonus_days = max_bonus_days
        self.xp_multiplier = xp_multiplier

    @property
    def grace_window_days(self) -> float:
        """Upper bound (inclusive) of the day difference still treated as consecutive."""
        return 1 + self.grace_period_hours / 24

    def classify(self, days_diff: float | None) -> StreakTransition:
        """Classify a day difference.

        A negative difference (last update in the future, e.g. clock skew)
        is treated as the same day so the streak is left untouched.
        """
        if days_diff is None:
            return StreakTransition.FIRST_TIME
        if days_diff <= 0:
            return StreakTransition.SAME_DAY
        if days_diff == 1:
            return StreakTransition.CONSECUTIVE
        if 1 < days_diff <= self.grace_window_days:
            return StreakTransition.GRACE_PERIOD
        return StreakTransition.RESET

    def bonus_for(self, streak: int) -> int:
        """Bonus XP for reaching ``streak`` days."""
        return min(streak, self.max_bonus_days) * self.xp_multiplier

    def evaluate(
        self,
        current_streak: int,
        last_update: datetime | None,
        now: datetime,
    ) -> StreakOutcome:
        """Compute the streak transition for an activity happening at ``now``.

        Args:
            current_streak: Stored streak count.
            last_update: Stored streak last-update timestamp, or None.
            now: Time of the activity.

        Returns:
            StreakOutcome with the new streak, the last-update value to
            store and the bonus XP.
        """
        today = normalize_to_day(now)
        days_diff = day_difference(last_update, now) if last_update is not None else None
        transition = self.classify(days_diff)

        if transition is StreakTransition.SAME_DAY:
            return StreakOutcome(
                transition=transition,
                streak=current_streak,
                last_update=normalize_to_day(last_update) if last_update is not None else today,
                bonus_xp=0,
            )

        if transition in (StreakTransition.CONSECUTIVE, StreakTransition.GRACE_PERIOD):
            new_streak = current_streak + 1
        else:
            new_streak = 1

        return StreakOutcome(
            transition=transition,
            streak=new_streak,
            last_update=today,
            bonus_xp=self.bonus_for(new_streak),
        )
