# src/tracelink/delivery/breaker.py
"""Three-state circuit breaker guarding the collector.

State machine:

    CLOSED --(threshold consecutive failures)--> OPEN
    OPEN   --(timeout elapsed, next request)---> HALF_OPEN
    HALF_OPEN --(probe succeeds)--> CLOSED (failure counter reset)
    HALF_OPEN --(probe fails)-----> OPEN   (timer restarts)

While OPEN every request is rejected without I/O. While HALF_OPEN at most
``half_open_max_calls`` probes are admitted concurrently.

Thread Safety:
    All state transitions happen under a single lock. The lock is never
    held while a transmission is in flight.
"""

from __future__ import annotations

import threading

import structlog

from tracelink.contracts.enums import CircuitState
from tracelink.core.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a half-open probe window.

    Example:
        breaker = CircuitBreaker(threshold=5, timeout=60.0)
        if not breaker.allow_request():
            return rejected_result
        try:
            send()
        except TransportError:
            breaker.record_failure()
        else:
            breaker.record_success()
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout: float = 60.0,
        *,
        half_open_max_calls: int = 1,
        clock: Clock | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1, got {threshold}")
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        if half_open_max_calls < 1:
            raise ValueError(f"half_open_max_calls must be >= 1, got {half_open_max_calls}")
        self._threshold = threshold
        self._timeout = timeout
        self._half_open_max_calls = half_open_max_calls
        self._clock = clock if clock is not None else DEFAULT_CLOCK

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._last_failure_at: float | None = None
        self._half_open_in_flight = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_failure_at(self) -> float | None:
        """Clock reading of the most recent recorded failure."""
        with self._lock:
            return self._last_failure_at

    def allow_request(self) -> bool:
        """Decide whether a transmission may proceed.

        An admitted HALF_OPEN probe MUST be followed by record_success() or
        record_failure(), which release its probe slot.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._opened_at is None:
                    raise RuntimeError("Circuit is open without an opened_at timestamp")
                if self._clock.monotonic() - self._opened_at < self._timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN)

            if self._half_open_in_flight >= self._half_open_max_calls:
                return False
            self._half_open_in_flight += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._transition(CircuitState.CLOSED)
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self._threshold:
                self._open()

    def reset(self) -> None:
        """Force the breaker back to CLOSED with a clean counter."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0

    def _open(self) -> None:
        """Must be called while holding _lock."""
        self._opened_at = self._clock.monotonic()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        """Must be called while holding _lock."""
        if new_state == self._state:
            return
        previous = self._state
        self._state = new_state
        if new_state != CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
        if new_state == CircuitState.CLOSED:
            self._opened_at = None
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            previous_state=str(previous),
            state=str(new_state),
            failure_count=self._failure_count,
        )
