"""
Injectable wall clock
Expiry decisions read time through a Clock so tests can move it explicitly
"""

from datetime import datetime, timedelta, UTC
from typing import Callable, Optional
import threading


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) or utc_now()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta given as keyword arguments"""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)
