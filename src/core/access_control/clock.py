"""
Clock sources for evaluation instants.

All instants handed to the core are normalised to naive UTC.
"""

from datetime import datetime, timedelta
from typing import Optional

from database.models import utcnow, to_naive_utc


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Clock pinned to an instant; tests move it explicitly."""

    def __init__(self, instant: Optional[datetime] = None):
        self._instant = to_naive_utc(instant) if instant else utcnow()

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = to_naive_utc(instant)

    def advance(self, **delta) -> datetime:
        self._instant = self._instant + timedelta(**delta)
        return self._instant
