"""
clock.py
========
Time source shared by the order scheduler and the voucher engine.

Timestamps are persisted as naive UTC. Order-lifecycle rules are stated in
local wall-clock terms, so elapsed-time checks convert both "now" and the
stored timestamp to the fixed local offset before comparing.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional


def utc_now() -> datetime:
    """Current time as naive UTC, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise an aware timestamp to the naive UTC storage form; naive input is assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Clock:

    def __init__(self, utc_offset_hours: int = 7, now: Optional[Callable[[], datetime]] = None):
        self.local_tz = timezone(timedelta(hours=utc_offset_hours))
        self._now = now or utc_now

    def now(self) -> datetime:
        """Naive UTC now."""
        return self._now()

    def to_local(self, value: datetime) -> datetime:
        """Convert a stored timestamp (naive means UTC) to the local timezone."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.local_tz)

    def to_utc(self, value: datetime) -> datetime:
        return as_naive_utc(value)

    def local_now(self) -> datetime:
        return self.to_local(self.now())

    def local_cutoff(self, delta: timedelta) -> datetime:
        """
        Local "now - delta", returned in storage form so it can be used in a
        query filter: stored < cutoff  <=>  to_local(stored) < local_now - delta.
        """
        return self.to_utc(self.local_now() - delta)

    def elapsed_local(self, value: datetime) -> timedelta:
        return self.local_now() - self.to_local(value)
