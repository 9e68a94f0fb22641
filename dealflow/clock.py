"""Clock abstraction so delay and retry timing can be tested without sleeping.

Production code uses ``SystemClock``; tests inject ``MockClock`` and advance
it explicitly before asking the scheduler to wake due runs.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Source of wall-clock time for ``wake_at`` calculations."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock()
        engine = Engine(clock=clock)
        clock.advance(timedelta(days=1))
        await engine.tick()
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, delta: timedelta | float) -> None:
        """Advance mock time by a timedelta or a number of seconds.

        Raises:
            ValueError: If the amount is negative.
        """
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        if delta < timedelta(0):
            raise ValueError(f"Cannot advance time by negative amount: {delta}")
        self._current += delta

    def set(self, value: datetime) -> None:
        self._current = value


DEFAULT_CLOCK: Clock = SystemClock()
