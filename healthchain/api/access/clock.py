"""
Time source for expiry decisions.

Every expiry comparison in the access services goes through a Clock so
the server, never the client, decides how much time is left.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Interface for a timezone-aware UTC time source."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """
    Wall-clock time that never moves backwards.

    If the host clock steps back (NTP correction), the last returned
    instant is repeated until real time catches up.
    """

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current


class ManualClock(Clock):
    """Clock that only moves when told to. Used for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = _as_utc(start or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, when: datetime) -> datetime:
        self._now = _as_utc(when)
        return self._now


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process-wide clock."""
    return _default_clock
