"""
Injectable clock.

Every "what day is it" question in the ledger goes through a Clock so tests
can pin the calendar. Days are computed in a single reference time zone;
an instant is never compared to a day without normalizing it first.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional, Union


def normalize_day(value: Union[date, datetime], tz: tzinfo = timezone.utc) -> date:
    """
    Strip the time of day from a value in the reference time zone.

    Naive datetimes are taken to be UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(tz).date()
    return value


class Clock(ABC):
    """Source of the current instant and the current calendar day."""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant (timezone-aware, UTC)."""
        pass

    @abstractmethod
    def today(self) -> date:
        """Current calendar day in the reference time zone."""
        pass


class SystemClock(Clock):
    """Wall clock."""

    def __init__(self, tz: tzinfo = timezone.utc):
        self._tz = tz

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return normalize_day(self.now(), self._tz)


class FixedClock(Clock):
    """Clock pinned to a given day; advanced explicitly."""

    def __init__(self, today: date, now: Optional[datetime] = None):
        self._today = today
        self._now = now

    def now(self) -> datetime:
        if self._now is not None:
            return self._now
        return datetime(
            self._today.year, self._today.month, self._today.day, 12,
            tzinfo=timezone.utc,
        )

    def today(self) -> date:
        return self._today

    def advance(self, days: int = 1) -> date:
        self._today = self._today + timedelta(days=days)
        self._now = None
        return self._today

    def set(self, today: date) -> None:
        self._today = today
        self._now = None
