"""
Injected time source

Managers and scheduler jobs read the current time through a Clock instead of
calling datetime.now() so that date-gated jobs can be exercised for any day.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract clock interface"""
    
    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time"""
        pass
    
    def today(self) -> date:
        """Current UTC calendar date"""
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time"""
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Clock pinned to a controlled instant, for tests and backfills.
    
    Time only moves when set() or advance() is called.
    """
    
    def __init__(self, current: Optional[datetime] = None):
        self._current = self._normalize(current or datetime(2024, 1, 1, tzinfo=timezone.utc))
    
    @staticmethod
    def _normalize(value) -> datetime:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        # plain date: noon UTC
        return datetime(value.year, value.month, value.day, 12, tzinfo=timezone.utc)
    
    def now(self) -> datetime:
        return self._current
    
    def set(self, value) -> None:
        """Move the clock to a date or datetime"""
        self._current = self._normalize(value)
    
    def advance(self, days: int = 0, seconds: int = 0) -> None:
        self._current = self._current + timedelta(days=days, seconds=seconds)
