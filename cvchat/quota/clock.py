"""Time sources for quota accounting.

Idle expiry is measured on a monotonic clock so wall-clock adjustments never
resurrect or prematurely expire a session. Daily budgets follow the calendar
day of the accounting timezone.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Capability the quota manager consumes from its environment."""

    def monotonic(self) -> float: ...

    def now(self) -> datetime: ...


class SystemClock:
    """Process clock bound to the accounting timezone."""

    def __init__(self, timezone_name: str = "UTC") -> None:
        self._tz = ZoneInfo(timezone_name)

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(self._tz)


def same_day(a: datetime, b: datetime) -> bool:
    """Return True if both instants fall on the same calendar day of ``b``'s zone."""
    if a.tzinfo is not None and b.tzinfo is not None:
        a = a.astimezone(b.tzinfo)
    return a.date() == b.date()


def next_midnight(moment: datetime) -> datetime:
    """Start of the calendar day after ``moment``, in ``moment``'s timezone."""
    tomorrow = moment.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=moment.tzinfo)
