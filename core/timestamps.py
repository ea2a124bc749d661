"""Timezone-aware UTC timestamp utilities and injectable clocks.

All code should use these helpers instead of datetime.utcnow() or
datetime.now(). Services take a clock so expiry and OTP windows can be
exercised deterministically.
"""

import threading
from datetime import datetime, timedelta, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(iso_str: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC if no timezone info.

    Handles naive timestamps written by older sinks.
    """
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return now()


class ManualClock:
    """Clock that only moves when told to.

    Usage:
        clock = ManualClock()
        clock.advance(seconds=30)
    """

    def __init__(self, start: datetime = None):
        start = start or now()
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        """Move forward by timedelta keyword arguments (seconds=, days=, ...)."""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = when
