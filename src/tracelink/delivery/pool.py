# src/tracelink/delivery/pool.py
"""Bounded pool of reusable sink connections.

Connections are created lazily up to ``max_size`` and returned after every
use, on success and failure paths alike. A caller that finds the pool
exhausted waits up to ``acquire_timeout`` for a connection to come back, or
for a discarded one to free its slot, and then fails with a retryable
TransportError.

Thread Safety:
    The idle stack and the created/in-use counters are guarded by one
    threading.Condition. Waiters are notified on release, on discard and
    on close.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from tracelink.contracts.errors import TransportError
from tracelink.delivery.protocols import SinkConnection

logger = structlog.get_logger(__name__)


class ConnectionPool:
    """Borrow/return pool with a hard upper bound on live connections.

    Example:
        pool = ConnectionPool(sink.open_connection, max_size=10)
        with pool.connection() as conn:
            response = conn.send(body, headers, timeout=30.0)
    """

    def __init__(
        self,
        factory: Callable[[], SinkConnection],
        max_size: int = 10,
        *,
        acquire_timeout: float = 5.0,
    ) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._factory = factory
        self._max_size = max_size
        self._acquire_timeout = acquire_timeout
        self._idle: deque[SinkConnection] = deque()
        self._cond = threading.Condition()
        self._created = 0
        self._in_use = 0
        self._closed = False

    @property
    def max_size(self) -> int:
        return self._max_size

    def acquire(self) -> SinkConnection:
        """Borrow a connection, creating one if the bound allows.

        Raises:
            TransportError: (retryable) if none became free within the timeout,
                or if the pool is closed (not retryable)
        """
        deadline = time.monotonic() + self._acquire_timeout
        with self._cond:
            while True:
                if self._closed:
                    raise TransportError("Connection pool is closed", retryable=False)
                if self._idle:
                    conn = self._idle.pop()
                    self._in_use += 1
                    return conn
                if self._created < self._max_size:
                    # Reserve the slot; the factory runs outside the lock
                    self._created += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        "Connection pool exhausted",
                        max_size=self._max_size,
                        acquire_timeout=self._acquire_timeout,
                    )
                    raise TransportError(
                        f"No connection available within {self._acquire_timeout}s (pool size {self._max_size})",
                        retryable=True,
                    )
                self._cond.wait(remaining)

        try:
            conn = self._factory()
        except Exception:
            with self._cond:
                self._created -= 1
                self._cond.notify()
            raise

        with self._cond:
            self._in_use += 1
        return conn

    def release(self, conn: SinkConnection) -> None:
        """Return a borrowed connection. Closes it instead if the pool is closed."""
        with self._cond:
            self._in_use = max(0, self._in_use - 1)
            if not self._closed:
                self._idle.append(conn)
                self._cond.notify()
                return
        self._discard(conn)

    def discard(self, conn: SinkConnection) -> None:
        """Drop a borrowed connection that is no longer usable."""
        with self._cond:
            self._in_use = max(0, self._in_use - 1)
        self._discard(conn)

    def _discard(self, conn: SinkConnection) -> None:
        with self._cond:
            self._created = max(0, self._created - 1)
            self._cond.notify()
        try:
            conn.close()
        except Exception as e:
            logger.warning("Connection close failed", error=str(e))

    @contextmanager
    def connection(self) -> Iterator[SinkConnection]:
        """Borrow a connection for the body of a ``with`` block."""
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def stats(self) -> dict[str, Any]:
        with self._cond:
            return {
                "max_size": self._max_size,
                "created": self._created,
                "in_use": self._in_use,
                "available": len(self._idle),
            }

    def close(self) -> None:
        """Close idle connections; borrowed ones are closed on release. Idempotent."""
        with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._cond.notify_all()
        for conn in idle:
            self._discard(conn)
