"""
Time source for the engine.

Every component reads time through a Clock so that accrual, staleness and
time-to-resolution are deterministic under test.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

SECONDS_PER_HOUR = 3600


def system_clock() -> datetime:
    """Wall-clock UTC time."""
    return datetime.now(timezone.utc)


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from start to end (negative if end precedes start)."""
    return (end - start).total_seconds() / SECONDS_PER_HOUR


def seconds_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds()


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ManualClock:
    """
    Settable clock for simulations and tests.

    Callable like system_clock, so it can be passed anywhere a Clock is
    expected.
    """

    def __init__(self, start: datetime | None = None):
        self._lock = threading.Lock()
        self._now = ensure_utc(start) if start else datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0.0, hours: float = 0.0) -> datetime:
        """Move time forward and return the new now."""
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, hours=hours)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)
