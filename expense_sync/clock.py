"""
Clock abstraction.

All ordering in the sync layer depends on server time read at write time.
Components take a Clock so tests can move time explicitly instead of
relying on wall-clock ordering.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    """Source of the current server time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    A clock that only moves when told to.

    Usage:
        clock = ManualClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
        clock.advance(seconds=5)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1.0) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)
