# src/tracelink/writer.py
"""EventWriter: the adapter-facing entry point.

Packages the adapter contract in one call: process the event, drop it
locally if it is oversized or malformed, and hand the payload to the
delivery engine's batcher. Nothing raised inside reaches the host
application.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

import structlog

from tracelink.contracts.errors import EventValidationError, PayloadTooLargeError

if TYPE_CHECKING:
    from tracelink.delivery.engine import DeliveryEngine
    from tracelink.events.universal import UniversalEvent
    from tracelink.processing.processor import EventProcessor

logger = structlog.get_logger(__name__)


class EventWriter:
    """Process-and-enqueue front door for adapters.

    Counters:
    - received: log() calls
    - queued: payloads accepted by the engine's buffer
    - filtered: events sampled out
    - dropped: oversized or invalid events, or buffer full
    - errors: unexpected failures (logged, never raised)

    Example:
        writer = EventWriter(processor, engine)
        writer.log(UniversalEvent(event_type="http.request", action="GET /orders", actor=actor))
        writer.close()
    """

    _LOG_INTERVAL = 100

    def __init__(self, processor: EventProcessor, engine: DeliveryEngine) -> None:
        self._processor = processor
        self._engine = engine
        self._lock = threading.Lock()
        self._received = 0
        self._queued = 0
        self._filtered = 0
        self._dropped = 0
        self._errors = 0
        self._last_logged_drop_count = 0
        self._closed = False

    @property
    def processor(self) -> EventProcessor:
        return self._processor

    @property
    def engine(self) -> DeliveryEngine:
        return self._engine

    def log(self, event: UniversalEvent) -> bool:
        """Process ``event`` and queue it for delivery.

        Returns:
            True if the event was queued; False if it was sampled out,
            dropped or the writer is closed
        """
        with self._lock:
            self._received += 1
        if self._closed:
            self._count_drop()
            return False

        try:
            payload = self._processor.process(event)
        except PayloadTooLargeError as e:
            logger.warning(
                "Dropping oversized event",
                event_id=event.event_id,
                event_type=event.event_type,
                size=e.size,
                limit=e.limit,
            )
            self._count_drop()
            return False
        except EventValidationError as e:
            logger.warning(
                "Dropping invalid event",
                event_id=event.event_id,
                errors=e.errors,
            )
            self._count_drop()
            return False
        except Exception as e:
            # Writer is a failure-isolation boundary for the host application
            logger.error("Event processing failed unexpectedly", error=str(e), error_type=type(e).__name__)
            with self._lock:
                self._errors += 1
            return False

        if payload is None:
            with self._lock:
                self._filtered += 1
            return False

        if not self._engine.enqueue(payload):
            self._count_drop()
            return False

        with self._lock:
            self._queued += 1
        return True

    def _count_drop(self) -> None:
        with self._lock:
            self._dropped += 1
            if self._dropped - self._last_logged_drop_count >= self._LOG_INTERVAL:
                logger.warning(
                    "Events dropped before delivery",
                    dropped_since_last_log=self._dropped - self._last_logged_drop_count,
                    dropped_total=self._dropped,
                )
                self._last_logged_drop_count = self._dropped

    def metrics(self) -> dict[str, Any]:
        with self._lock:
            counters: dict[str, Any] = {
                "received": self._received,
                "queued": self._queued,
                "filtered": self._filtered,
                "dropped": self._dropped,
                "errors": self._errors,
            }
        counters["delivery"] = self._engine.metrics()
        return counters

    def flush(self, timeout: float | None = 30.0) -> bool:
        return self._engine.flush(timeout)

    def close(self) -> None:
        """Deliver pending events and shut the engine down. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._engine.shutdown()
        logger.info("Event writer closed", **self.metrics())
