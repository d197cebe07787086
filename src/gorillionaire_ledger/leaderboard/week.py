"""ISO week windows in UTC.

A week runs from Monday 00:00:00.000 to Sunday 23:59:59.999 UTC. Week
identity is the ISO-8601 (week-year, week number) of the Monday, so the
last days of December can belong to week 1 of the next year and the first
days of January to week 52/53 of the previous one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

WEEK = timedelta(days=7)
END_OF_WEEK_OFFSET = WEEK - timedelta(milliseconds=1)


@dataclass(frozen=True)
class WeekBoundaries:
    """UTC bounds of one week.

    ``end`` is the last millisecond of Sunday. Range queries use
    ``next_start`` as an exclusive bound so sub-millisecond timestamps on
    Sunday night are still counted.
    """

    start: datetime
    end: datetime

    @property
    def next_start(self) -> datetime:
        return self.start + WEEK

    def contains(self, value: datetime) -> bool:
        return self.start <= _as_utc(value) < self.next_start


@dataclass(frozen=True)
class WeekInfo:
    """ISO week identity."""

    year: int
    week_number: int


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def week_boundaries(value: datetime) -> WeekBoundaries:
    """Return the Monday-to-Sunday UTC week containing ``value``."""
    value = _as_utc(value)
    days_to_subtract = value.weekday()  # Monday == 0
    start = (value - timedelta(days=days_to_subtract)).replace(hour=0, minute=0, second=0, microsecond=0)
    return WeekBoundaries(start=start, end=start + END_OF_WEEK_OFFSET)


def week_info(value: datetime) -> WeekInfo:
    """ISO week-year and week number of the week containing ``value``."""
    iso = week_boundaries(value).start.isocalendar()
    return WeekInfo(year=iso.year, week_number=iso.week)


def is_week_over(value: datetime, *, now: datetime | None = None) -> bool:
    """True once ``now`` is past the end of the week containing ``value``."""
    current = _as_utc(now) if now is not None else datetime.now(UTC)
    return current > week_boundaries(value).end


def previous_week_start(now: datetime) -> datetime:
    """Monday 00:00 UTC of the week before the one containing ``now``."""
    return week_boundaries(now).start - WEEK


def next_week_start(now: datetime) -> datetime:
    """Monday 00:00 UTC of the week after the one containing ``now``."""
    return week_boundaries(now).next_start
