"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Single time source for key leasing, backoff windows and
data source health bookkeeping.

- Every "now" used for failed_until / last_used_at comes from here
- MockClock lets tests move time forward (backoff expiry, rate
  limit resets) without sleeping
- UTC only

============================================================
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the system clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current timezone-aware UTC datetime."""
        pass

    def monotonic(self) -> float:
        """Monotonic seconds, used for latency measurement."""
        return time.monotonic()


class SystemClock(ClockProtocol):
    """Production clock backed by the OS clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(ClockProtocol):
    """
    Manually driven clock for tests.

    Time only moves when advance() is called.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def advance(self, seconds: float) -> None:
        """Move time forward by `seconds`."""
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds)


# ============================================================
# CLOCK FACTORY
# ============================================================

class ClockFactory:
    """Process-wide default clock used when no clock is injected."""

    _instance: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        with cls._lock:
            if cls._instance is None:
                cls._instance = SystemClock()
            return cls._instance


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """Strip tzinfo after converting to UTC (database representation)."""
    return ensure_utc(dt).replace(tzinfo=None)


def to_iso8601(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO 8601 string (None passes through)."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "ensure_utc",
    "to_naive_utc",
    "to_iso8601",
]
