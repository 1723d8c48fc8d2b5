"""Injectable time source.

Every service that compares against "now" (proration, reservation expiry,
OTP expiry, webhook replay windows) takes a :class:`Clock` so tests can pin
time without patching ``datetime``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock:
    """A clock frozen at a given instant, advanced explicitly.

    Parameters
    ----------
    instant:
        The initial time.  Naive datetimes are interpreted as UTC.
    """

    def __init__(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance(self, delta: timedelta) -> None:
        self._instant = self._instant + delta

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        self._instant = instant


def utc_midnight(instant: datetime) -> datetime:
    """Return 00:00 UTC of the calendar day containing *instant*."""
    instant = instant.astimezone(UTC)
    return instant.replace(hour=0, minute=0, second=0, microsecond=0)


def add_months(day: date, months: int = 1) -> date:
    """Shift *day* by whole calendar months, clamping to the month's last day."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last = days_in_month(year, month)
    return day.replace(year=year, month=month, day=min(day.day, last))


def days_in_month(year: int, month: int) -> int:
    """Number of days in the given month."""
    if month == 12:
        nxt = date(year + 1, 1, 1)
    else:
        nxt = date(year, month + 1, 1)
    return (nxt - date(year, month, 1)).days


def first_of_next_month(day: date) -> date:
    """The 1st of the month after *day*."""
    return add_months(day.replace(day=1), 1)


def as_utc(instant: datetime) -> datetime:
    """Attach UTC to a naive datetime (SQLite drops the offset on read)."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant
