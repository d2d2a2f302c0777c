# src/tracelink/delivery/engine.py
"""DeliveryEngine: reliable, non-blocking-for-the-caller batch delivery.

The engine wraps a sink (the transmit step) with:
1. Circuit breaking - fail fast while the collector is down
2. Connection pooling - bounded, reusable connections
3. Compression - gzip above a size threshold, uncompressed on failure
4. Retries - exponential backoff for network errors and retryable statuses
5. Batching - background accumulation by size or time (enqueue())
6. Health and metrics - lock-protected counters for monitoring

Failure handling:
    deliver() and deliver_batch() never raise. Every outcome, including
    "circuit open" and "no endpoint configured", is a DeliveryResult.

Breaker accounting:
    2xx/207 and non-retryable 4xx answers mean the collector is reachable
    and count as breaker successes. Exhausted retries, transport errors
    and 5xx answers count as breaker failures.

Thread Safety:
    deliver*() may be called from any number of threads. Shared state is
    limited to the breaker, the pool and the metrics, each lock protected.
"""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from tracelink import __version__
from tracelink.contracts.enums import CircuitState, DeliveryStatus
from tracelink.contracts.errors import TransportError
from tracelink.contracts.results import DeliveryResult, ProcessedEvent, SinkResponse
from tracelink.core.clock import Clock
from tracelink.delivery.batcher import BatchWorker
from tracelink.delivery.breaker import CircuitBreaker
from tracelink.delivery.compression import maybe_compress
from tracelink.delivery.pool import ConnectionPool
from tracelink.delivery.protocols import SinkConnection, SinkProtocol
from tracelink.delivery.retry import MaxRetriesExceeded, RetryConfig, RetryManager

if TYPE_CHECKING:
    from tracelink.core.config import TracelinkSettings

logger = structlog.get_logger(__name__)

DEFAULT_RETRYABLE_STATUSES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})
MULTI_STATUS = 207

# Outcomes kept for the rolling success/failure counts in health_status()
_RECENT_WINDOW = 100

_SUCCESS_RESULT_STATUSES = frozenset({"success", "ok", "accepted", "delivered"})


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _result_item_succeeded(item: Any) -> bool:
    status = item.get("status") if isinstance(item, Mapping) else None
    if isinstance(status, bool):
        return False
    if isinstance(status, int):
        return 200 <= status < 300
    if isinstance(status, str):
        return status.lower() in _SUCCESS_RESULT_STATUSES
    return False


def parse_multi_status(body: str, total: int) -> tuple[int, int] | None:
    """Count accepted/rejected events in a 207 body.

    Expected shape: ``{"results": [{"status": 200 | "success" | ...}, ...]}``.

    Returns:
        (delivered_count, failed_count), or None if the body is malformed
    """
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    results = parsed.get("results") if isinstance(parsed, dict) else None
    if not isinstance(results, list):
        return None
    delivered = sum(1 for item in results if _result_item_succeeded(item))
    failed = len(results) - delivered
    # Events the collector did not mention were not accepted
    failed += max(0, total - len(results))
    return delivered, failed


class DeliveryEngine:
    """Batch delivery with circuit breaker, pool, compression and retries.

    Example:
        engine = DeliveryEngine(sink, service="checkout", environment="production")
        result = engine.deliver(payload)
        if not result.success:
            ...  # log and carry on; never raise into the host application
        engine.enqueue(payload)  # background batching
        engine.shutdown()
    """

    def __init__(
        self,
        sink: SinkProtocol | None,
        *,
        service: str = "unknown-service",
        environment: str = "development",
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        retry_config: RetryConfig | None = None,
        retryable_statuses: Iterable[int] = DEFAULT_RETRYABLE_STATUSES,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        max_connections: int = 10,
        pool_acquire_timeout: float = 5.0,
        compression_enabled: bool = True,
        compression_threshold: int = 1024,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        buffer_size: int = 1000,
        clock: Clock | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._sink = sink
        self._timeout = timeout
        self._retryable_statuses = frozenset(retryable_statuses)
        self._compression_enabled = compression_enabled
        self._compression_threshold = compression_threshold
        self._headers = self._build_headers(service, environment, headers or {})

        self._breaker = CircuitBreaker(
            circuit_breaker_threshold,
            circuit_breaker_timeout,
            half_open_max_calls=half_open_max_calls,
            clock=clock,
        )
        self._retry = RetryManager(retry_config or RetryConfig(), sleep=sleep)
        self._pool: ConnectionPool | None = None
        if sink is not None:
            self._pool = ConnectionPool(sink.open_connection, max_connections, acquire_timeout=pool_acquire_timeout)
        self._batcher = BatchWorker(
            self.deliver_batch,
            batch_size=batch_size,
            flush_interval=flush_interval,
            max_queue_size=buffer_size,
        )

        self._metrics_lock = threading.Lock()
        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._total_retries = 0
        self._circuit_rejections = 0
        self._bytes_sent = 0
        self._events_delivered = 0
        self._events_failed = 0
        self._batches_sent = 0
        self._total_response_time = 0.0
        self._recent: deque[bool] = deque(maxlen=_RECENT_WINDOW)
        self._last_success_at: str | None = None
        self._last_failure_at: str | None = None
        self._last_error: str | None = None
        self._shutdown = False

    @classmethod
    def from_settings(
        cls,
        settings: TracelinkSettings,
        sink: SinkProtocol | None,
        *,
        clock: Clock | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> DeliveryEngine:
        delivery = settings.delivery
        performance = settings.performance
        return cls(
            sink,
            service=settings.platform.service_name,
            environment=settings.platform.environment,
            headers=delivery.headers,
            timeout=delivery.timeout,
            retry_config=RetryConfig.from_settings(delivery),
            retryable_statuses=delivery.retryable_statuses,
            circuit_breaker_threshold=delivery.circuit_breaker_threshold,
            circuit_breaker_timeout=delivery.circuit_breaker_timeout,
            half_open_max_calls=delivery.half_open_max_calls,
            max_connections=performance.max_delivery_connections,
            pool_acquire_timeout=delivery.pool_acquire_timeout,
            compression_enabled=performance.compression_enabled,
            compression_threshold=performance.compression_threshold,
            batch_size=delivery.batch_size,
            flush_interval=delivery.flush_interval,
            buffer_size=performance.event_buffer_size,
            clock=clock,
            sleep=sleep,
        )

    @staticmethod
    def _build_headers(service: str, environment: str, extra: Mapping[str, str]) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"tracelink/{__version__}",
            "X-Tracelink-Agent": "python",
            "X-Tracelink-Version": __version__,
            "X-Tracelink-Service": service,
            "X-Tracelink-Environment": environment,
        }
        headers.update(extra)
        return headers

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def sink(self) -> SinkProtocol | None:
        return self._sink

    # ------------------------------------------------------------------
    # Synchronous delivery
    # ------------------------------------------------------------------

    def deliver(self, payload: ProcessedEvent) -> DeliveryResult:
        """Deliver a single processed event as a one-element batch."""
        return self.deliver_batch([payload])

    def deliver_batch(self, payloads: Sequence[ProcessedEvent]) -> DeliveryResult:
        """Deliver ``payloads`` as one transmission, retried as a unit.

        Never raises.
        """
        started = time.monotonic()
        count = len(payloads)

        if count == 0:
            return DeliveryResult(success=True, status=DeliveryStatus.EMPTY)

        if self._sink is None or self._pool is None:
            return self._finish_failure(
                DeliveryStatus.NO_ENDPOINT,
                "No delivery endpoint configured",
                count,
                started,
                attempted=False,
            )
        pool = self._pool

        try:
            body = json.dumps(list(payloads), separators=(",", ":"), default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            return self._finish_failure(
                DeliveryStatus.REJECTED,
                f"Batch is not serializable: {e}",
                count,
                started,
                attempted=False,
            )

        if not self._breaker.allow_request():
            with self._metrics_lock:
                self._circuit_rejections += 1
            return self._finish_failure(
                DeliveryStatus.CIRCUIT_OPEN,
                "Circuit breaker is open",
                count,
                started,
                attempted=False,
            )

        body, encoding = maybe_compress(
            body,
            enabled=self._compression_enabled,
            threshold=self._compression_threshold,
        )
        headers = dict(self._headers)
        if encoding is not None:
            headers["Content-Encoding"] = encoding
        compressed = encoding is not None

        attempts = 0

        def attempt() -> SinkResponse:
            nonlocal attempts
            attempts += 1
            return self._send_once(pool, body, headers)

        try:
            response = self._retry.execute_with_retry(
                attempt,
                is_retryable=lambda e: isinstance(e, TransportError) and e.retryable,
                should_retry_result=lambda r: r.status_code in self._retryable_statuses,
                on_retry=self._log_retry,
            )
        except MaxRetriesExceeded as e:
            self._breaker.record_failure()
            return self._finish_failure(
                DeliveryStatus.FAILED,
                str(e.last_error),
                count,
                started,
                retries=attempts - 1,
                compressed=compressed,
            )
        except TransportError as e:
            self._breaker.record_failure()
            return self._finish_failure(
                DeliveryStatus.FAILED,
                str(e),
                count,
                started,
                retries=attempts - 1,
                compressed=compressed,
            )

        return self._classify(response, count, started, attempts - 1, len(body), compressed)

    def _send_once(self, pool: ConnectionPool, body: bytes, headers: Mapping[str, str]) -> SinkResponse:
        try:
            conn: SinkConnection = pool.acquire()
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Could not open sink connection: {e}", retryable=False) from e
        try:
            response = conn.send(body, headers, timeout=self._timeout)
        except TransportError:
            pool.discard(conn)
            raise
        except Exception as e:
            pool.discard(conn)
            raise TransportError(f"Sink raised {type(e).__name__}: {e}", retryable=False) from e
        pool.release(conn)
        return response

    def _classify(
        self,
        response: SinkResponse,
        count: int,
        started: float,
        retries: int,
        size: int,
        compressed: bool,
    ) -> DeliveryResult:
        status_code = response.status_code

        if status_code == MULTI_STATUS:
            self._breaker.record_success()
            counts = parse_multi_status(response.body, count)
            if counts is None:
                return self._finish_failure(
                    DeliveryStatus.PARTIAL,
                    "Invalid response format",
                    count,
                    started,
                    status_code=status_code,
                    retries=retries,
                    compressed=compressed,
                    bytes_sent=size,
                )
            delivered, failed = counts
            if failed:
                return self._finish_failure(
                    DeliveryStatus.PARTIAL,
                    f"Collector rejected {failed} of {count} events",
                    failed,
                    started,
                    status_code=status_code,
                    retries=retries,
                    compressed=compressed,
                    bytes_sent=size,
                    delivered=delivered,
                )
            return self._finish_success(delivered, started, status_code, retries, size, compressed)

        if response.is_success:
            self._breaker.record_success()
            return self._finish_success(count, started, status_code, retries, size, compressed)

        if status_code in self._retryable_statuses or status_code >= 500:
            self._breaker.record_failure()
            status = DeliveryStatus.FAILED
        else:
            self._breaker.record_success()
            status = DeliveryStatus.REJECTED
        return self._finish_failure(
            status,
            f"HTTP {status_code}: {response.body[:200]}" if response.body else f"HTTP {status_code}",
            count,
            started,
            status_code=status_code,
            retries=retries,
            compressed=compressed,
            bytes_sent=size,
        )

    def _log_retry(self, attempt: int, delay: float) -> None:
        logger.debug("Retrying delivery", attempt=attempt, delay=delay)

    def _finish_success(
        self,
        delivered: int,
        started: float,
        status_code: int,
        retries: int,
        size: int,
        compressed: bool,
    ) -> DeliveryResult:
        elapsed = time.monotonic() - started
        with self._metrics_lock:
            self._total_requests += 1
            self._successful_requests += 1
            self._total_retries += retries
            self._bytes_sent += size
            self._events_delivered += delivered
            self._batches_sent += 1
            self._total_response_time += elapsed
            self._recent.append(True)
            self._last_success_at = _now_iso()
        return DeliveryResult(
            success=True,
            status=DeliveryStatus.DELIVERED,
            status_code=status_code,
            retry_count=retries,
            response_time=elapsed,
            delivered_count=delivered,
            compressed=compressed,
        )

    def _finish_failure(
        self,
        status: DeliveryStatus,
        error: str,
        failed: int,
        started: float,
        *,
        status_code: int | None = None,
        retries: int = 0,
        compressed: bool = False,
        bytes_sent: int = 0,
        delivered: int = 0,
        attempted: bool = True,
    ) -> DeliveryResult:
        elapsed = time.monotonic() - started
        with self._metrics_lock:
            if attempted:
                self._total_requests += 1
                self._total_response_time += elapsed
                if status_code is not None:
                    self._batches_sent += 1
            self._failed_requests += 1
            self._total_retries += retries
            self._bytes_sent += bytes_sent
            self._events_delivered += delivered
            self._events_failed += failed
            self._recent.append(False)
            self._last_failure_at = _now_iso()
            self._last_error = error
        logger.warning(
            "Event delivery failed",
            status=str(status),
            status_code=status_code,
            error=error,
            failed_count=failed,
            retry_count=retries,
        )
        return DeliveryResult(
            success=False,
            status=status,
            status_code=status_code,
            error=error,
            retry_count=retries,
            response_time=elapsed,
            delivered_count=delivered,
            failed_count=failed,
            compressed=compressed,
        )

    # ------------------------------------------------------------------
    # Background batching
    # ------------------------------------------------------------------

    def enqueue(self, payload: ProcessedEvent) -> bool:
        """Queue a payload for background batch delivery. Never blocks.

        Returns:
            False if the payload was dropped (buffer full or engine shut down)
        """
        if self._shutdown:
            return False
        return self._batcher.enqueue(payload)

    def flush(self, timeout: float | None = 30.0) -> bool:
        """Deliver everything enqueued so far and wait for completion."""
        return self._batcher.flush(timeout)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def health_status(self) -> dict[str, Any]:
        """Operational snapshot for health checks.

        Reads are approximately consistent across the breaker, pool and
        metrics locks.
        """
        pool_stats = self._pool.stats() if self._pool is not None else {"max_size": 0, "created": 0, "in_use": 0, "available": 0}
        with self._metrics_lock:
            recent_successes = sum(1 for ok in self._recent if ok)
            recent_failures = len(self._recent) - recent_successes
            last_success_at = self._last_success_at
            last_failure_at = self._last_failure_at
            last_error = self._last_error
        return {
            "healthy": self._sink is not None and not self._shutdown and self._breaker.state == CircuitState.CLOSED,
            "circuit_breaker_state": str(self._breaker.state),
            "failure_count": self._breaker.failure_count,
            "connection_pool": pool_stats,
            "recent_successes": recent_successes,
            "recent_failures": recent_failures,
            "last_success_at": last_success_at,
            "last_failure_at": last_failure_at,
            "last_error": last_error,
            "queue_depth": self._batcher.queue_depth,
            "queue_maxsize": self._batcher.queue_maxsize,
        }

    def metrics(self) -> dict[str, Any]:
        """Cumulative delivery counters."""
        with self._metrics_lock:
            average = self._total_response_time / self._total_requests if self._total_requests else 0.0
            return {
                "total_requests": self._total_requests,
                "successful_requests": self._successful_requests,
                "failed_requests": self._failed_requests,
                "total_retries": self._total_retries,
                "circuit_breaker_rejections": self._circuit_rejections,
                "bytes_sent": self._bytes_sent,
                "events_delivered": self._events_delivered,
                "events_failed": self._events_failed,
                "events_dropped": self._batcher.dropped_count,
                "batches_sent": self._batches_sent,
                "average_response_time": average,
            }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self, timeout: float = 10.0) -> None:
        """Deliver what is queued, stop the worker and release connections.

        Idempotent.
        """
        if self._shutdown:
            return
        self._shutdown = True
        self._batcher.close(timeout)
        if self._pool is not None:
            self._pool.close()
        if self._sink is not None:
            try:
                self._sink.close()
            except Exception as e:
                logger.warning("Sink close failed", sink=self._sink.name, error=str(e))
        logger.info("Delivery engine shut down", **self.metrics())
