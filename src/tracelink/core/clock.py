# src/tracelink/core/clock.py
"""Clock abstraction for testable timeout logic.

The circuit breaker timeout and the batch flush interval both depend on
elapsed time. Production code uses SystemClock (the default); tests inject
MockClock to control time advancement without sleeping.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Abstract monotonic clock.

    Implementations:
    - SystemClock: Uses time.monotonic() (production)
    - MockClock: Returns controllable times (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...


class SystemClock:
    """Production clock using time.monotonic()."""

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(start=0.0)
        breaker = CircuitBreaker(threshold=3, timeout=60.0, clock=clock)
        ...
        clock.advance(60.0)
        assert breaker.allow_request()  # open -> half_open
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start

    def monotonic(self) -> float:
        return self._current

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds

    def set(self, value: float) -> None:
        """Set mock time to an absolute value (may move backwards)."""
        self._current = value


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
