"""
Injectable time source.

Step ``started_at``/``completed_at``, decision ``decided_at``, definition
``published_at`` and every audit timestamp are read from a ``Clock``
handed to the service that records them, never from ``datetime.now()``.
Tests use ``DeterministicClock`` so those values are exact.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    ``now()`` keeps returning the same instant until ``advance()`` moves
    it.  Two decisions recorded without an ``advance()`` in between share a
    timestamp.
    """

    def __init__(self, start: datetime = EPOCH):
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by ``seconds`` and return the new time."""
        if seconds < 0:
            raise ValueError("time only moves forward")
        self._current += timedelta(seconds=seconds)
        return self._current
