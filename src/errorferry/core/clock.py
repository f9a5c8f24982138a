"""Clock abstraction for testable window, backoff and rollover logic.

Every time-dependent decision in the pipeline (burst window, duplicate
window, circuit reset timeout, offline max age, calendar quota rollover)
reads time through a Clock so tests can move time deterministically.

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for window and timeout evaluation.

    Implementations:
    - SystemClock: Uses the system clocks (production)
    - MockClock: Returns controllable times (testing)
    """

    def time(self) -> float:
        """Return wall-clock time as epoch seconds.

        Used for every timestamp that is persisted, because persisted state
        outlives the process and may be read by another process.
        """
        ...

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime.

        Used for calendar boundaries (daily and monthly quota rollover).
        """
        ...

    def monotonic(self) -> float:
        """Return monotonic time in seconds for elapsed-time measurement."""
        ...


class SystemClock:
    """Production clock backed by ``time.time()`` and ``time.monotonic()``."""

    def time(self) -> float:
        return time.time()

    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Wall time and monotonic time advance together so elapsed-time
    measurements agree with persisted timestamps.

    Example:
        clock = MockClock(start=1_700_000_000.0)
        limiter = RateLimiter(settings, store, clock=clock)

        limiter.mark_sent(event)
        clock.advance(299.0)
        assert not limiter.can_send(event).allowed  # still a duplicate

        clock.advance(2.0)
        assert limiter.can_send(event).allowed
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        """Initialize mock clock at a given epoch time.

        Args:
            start: Initial wall-clock epoch seconds.
        """
        self._current = start
        self._monotonic = 0.0

    def time(self) -> float:
        return self._current

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._current, tz=UTC)

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Args:
            seconds: Amount to advance (must be non-negative).

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds
        self._monotonic += seconds

    def set(self, value: float) -> None:
        """Set wall-clock time to an absolute epoch value.

        Note:
            Unlike advance(), this can move wall time backwards (simulating
            an NTP correction). Monotonic time is left untouched.
        """
        self._current = value

    def sleep(self, seconds: float) -> None:
        """Sleep substitute for retry tests: advances time instead of blocking."""
        self.advance(seconds)


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
