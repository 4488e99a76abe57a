"""
Time sources for the tracker.

The engine never calls ``datetime.now`` directly; it asks a ``Clock``. The
system clock is anchored to the monotonic counter so deadlines never move
backwards when the wall clock is adjusted, and the manual clock lets tests
simulate elapsed time.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Protocol for time sources."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time that advances monotonically."""

    def __init__(self):
        self._anchor_wall = datetime.now(timezone.utc)
        self._anchor_mono = time.monotonic()

    def now(self) -> datetime:
        elapsed = time.monotonic() - self._anchor_mono
        return self._anchor_wall + timedelta(seconds=elapsed)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, ms: float = 0, seconds: float = 0, minutes: float = 0) -> datetime:
        """Move time forward and return the new instant."""
        delta = timedelta(milliseconds=ms, seconds=seconds, minutes=minutes)
        if delta < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now += delta
        return self._now

    def advance_to(self, instant: datetime) -> datetime:
        """Jump forward to ``instant`` (no-op if it is already past)."""
        if instant > self._now:
            self._now = instant
        return self._now
