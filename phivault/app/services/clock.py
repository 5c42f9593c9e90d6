"""
Clock abstraction.

Services never call datetime.now() directly; they receive a clock so that
expiry, rotation and lockout windows can be exercised with simulated time.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def format_utc(moment: datetime) -> str:
    """Render an aware datetime as ISO 8601 UTC with a 'Z' suffix."""
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc(value: str) -> datetime:
    """Parse a timestamp produced by format_utc()."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_iso(self) -> str:
        return format_utc(self.now())


class ManualClock(SystemClock):
    """
    Clock that only moves when told to.

    Used by tests and simulations to step past consent or key expiry.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment
