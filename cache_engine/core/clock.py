"""
Clock abstraction.

All expiry and scheduling decisions read time through a Clock so tests
can drive time deterministically with ManualClock.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Source of monotonic and wall-clock time."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic timeline. Used for TTL arithmetic."""

    @abstractmethod
    def wall(self) -> datetime:
        """Current UTC wall-clock time. Used for reporting only."""


class SystemClock(Clock):
    """Clock backed by the process clocks."""

    def monotonic(self) -> float:
        return time.monotonic()

    def wall(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Wall time is derived from a fixed epoch plus the monotonic offset so
    both timelines stay consistent.
    """

    def __init__(self, start: float = 0.0, epoch: Optional[datetime] = None):
        self._now = float(start)
        self._epoch = epoch or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self._now

    def wall(self) -> datetime:
        return self._epoch + timedelta(seconds=self.monotonic())

    def advance(self, seconds: float) -> float:
        """Move time forward and return the new monotonic reading."""
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, now: float) -> None:
        """Jump to an absolute monotonic reading."""
        with self._lock:
            if now < self._now:
                raise ValueError("Clock cannot move backwards")
            self._now = float(now)
