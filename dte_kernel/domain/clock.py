"""
Clock -- injectable time source.

Responsibility:
    Allocator, negotiator, transmitter and reconciler take a Clock instead of
    calling ``datetime.now()``.  Token expiry, recheck intervals and the
    default issue date are therefore pure comparisons against this value.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only place that reads the wall
    clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """All times are timezone-aware and normalised to UTC."""

    @abstractmethod
    def now_utc(self) -> datetime: ...

    def now(self) -> datetime:
        return self.now_utc()

    def today(self) -> date:
        """Default issue date."""
        return self.now_utc().date()


class SystemClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``advance`` and ``tick`` move it forward; ``set_time`` jumps anywhere.
    """

    def __init__(self, start: datetime | None = None):
        self._current = (start or datetime(2024, 1, 1, 12, tzinfo=timezone.utc)).astimezone(
            timezone.utc
        )

    def now_utc(self) -> datetime:
        return self._current

    def set_time(self, moment: datetime) -> None:
        self._current = moment.astimezone(timezone.utc)

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def tick(self) -> datetime:
        self.advance(1)
        return self._current
