"""
Time sources for services and the scheduler.

Services receive a clock instead of calling datetime.utcnow() directly so
that backoff, presence thresholds and cron matching can be driven
deterministically in tests.
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol


class Clock(Protocol):
    """Anything that can report the current naive UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock (naive UTC, matching the timestamps stored by the models)."""

    def now(self) -> datetime:
        return datetime.utcnow()


class ManualClock:
    """
    Clock that only moves when told to.

    Example:
        clock = ManualClock(datetime(2025, 1, 6, 7, 59))
        clock.advance(minutes=1)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, 0, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (seconds=, minutes=, ...)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value
