"""
Clock abstraction - injectable time source.

Runtime components read time only through a Clock so tests can drive TTLs
and staleness deterministically.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Union
import threading


class Clock(Protocol):
    """Time source protocol."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: Union[timedelta, float, int]) -> datetime:
        """Move forward by a timedelta or a number of seconds."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        if delta < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now = self._now + delta
            return self._now

    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = moment


def epoch_ms(moment: datetime) -> int:
    """Milliseconds since the Unix epoch."""
    return int(moment.timestamp() * 1000)


__all__ = ["Clock", "SystemClock", "ManualClock", "epoch_ms"]
