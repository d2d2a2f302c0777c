# tests/unit/delivery/test_delivery_engine.py
"""Unit tests for DeliveryEngine.

Tests cover:
- Outcome classification (delivered, partial, rejected, failed, circuit open,
  no endpoint, empty)
- Retry behavior with recorded backoff
- Circuit breaker integration, including recovery through half-open
- Compression and headers
- Metrics and health snapshots
- Background batching and shutdown
"""

import json
from typing import Any
from unittest.mock import patch

import pytest

from tracelink import __version__
from tracelink.contracts.enums import CircuitState, DeliveryStatus
from tracelink.contracts.errors import TransportError
from tracelink.contracts.results import SinkResponse
from tracelink.core.clock import MockClock
from tracelink.core.config import DeliverySettings, PerformanceSettings, PlatformSettings, TracelinkSettings
from tracelink.delivery.engine import DeliveryEngine, parse_multi_status
from tracelink.delivery.retry import RetryConfig
from tracelink.delivery.sinks.memory import MemorySink


def _payload(n: int = 1, **extra: Any) -> dict[str, Any]:
    return {"event_id": f"evt_{n:04d}", "event_type": "data.change", **extra}


# =============================================================================
# Outcomes
# =============================================================================


class TestDelivered:
    def test_single_event(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        result = engine.deliver(_payload())

        assert result.success
        assert result.status == DeliveryStatus.DELIVERED
        assert result.status_code == 200
        assert result.delivered_count == 1
        assert result.retry_count == 0
        assert memory_sink.events == [_payload()]

    def test_batch_is_one_transmission(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        result = engine.deliver_batch([_payload(i) for i in range(5)])
        assert result.delivered_count == 5
        assert len(memory_sink.requests) == 1
        assert len(memory_sink.events) == 5

    def test_empty_batch(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        result = engine.deliver_batch([])
        assert result.success
        assert result.status == DeliveryStatus.EMPTY
        assert memory_sink.requests == []


class TestRetries:
    def test_retryable_status_then_success(self, engine: DeliveryEngine, memory_sink: MemorySink, sleeps: list[float]) -> None:
        memory_sink.script(503, 200)
        result = engine.deliver(_payload())

        assert result.success
        assert result.retry_count == 1
        assert sleeps == [0.5]
        assert len(memory_sink.requests) == 2

    def test_exhausted_retryable_status_fails(self, engine: DeliveryEngine, memory_sink: MemorySink, sleeps: list[float]) -> None:
        memory_sink.script(503, 503, 503, 503)
        result = engine.deliver(_payload())

        assert not result.success
        assert result.status == DeliveryStatus.FAILED
        assert result.status_code == 503
        assert result.retry_count == 3
        assert result.failed_count == 1
        assert sleeps == [0.5, 1.0, 2.0]
        assert engine.circuit_breaker.failure_count == 1

    def test_transport_errors_exhausted(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(*(TransportError("connection reset") for _ in range(4)))
        result = engine.deliver(_payload())

        assert result.status == DeliveryStatus.FAILED
        assert result.status_code is None
        assert result.error == "connection reset"
        assert result.retry_count == 3

    def test_failed_connection_is_replaced(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(TransportError("reset"), 200)
        assert engine.deliver(_payload()).success
        assert memory_sink.connections_opened == 2

    def test_unexpected_sink_exception_not_retried(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(RuntimeError("bug in sink"))
        result = engine.deliver(_payload())

        assert result.status == DeliveryStatus.FAILED
        assert "bug in sink" in (result.error or "")
        assert len(memory_sink.requests) == 1


class TestRejected:
    def test_client_error_not_retried(self, engine: DeliveryEngine, memory_sink: MemorySink, sleeps: list[float]) -> None:
        memory_sink.script(SinkResponse(400, "bad schema"))
        result = engine.deliver(_payload())

        assert result.status == DeliveryStatus.REJECTED
        assert result.status_code == 400
        assert result.error == "HTTP 400: bad schema"
        assert sleeps == []
        assert len(memory_sink.requests) == 1

    def test_client_error_counts_as_reachable(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.configure({"status_code": 422})
        for _ in range(5):
            engine.deliver(_payload())
        assert engine.circuit_breaker.state == CircuitState.CLOSED

    def test_unserializable_batch(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        looped: dict[str, Any] = {}
        looped["self"] = looped
        result = engine.deliver(looped)

        assert result.status == DeliveryStatus.REJECTED
        assert memory_sink.requests == []
        assert engine.circuit_breaker.failure_count == 0

    def test_failure_logged(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(400)
        with patch("tracelink.delivery.engine.logger") as mock_logger:
            engine.deliver(_payload())
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.kwargs["status_code"] == 400


class TestMultiStatus:
    def test_partial_success(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        body = json.dumps({"results": [{"status": 200}, {"status": "failed", "error": "bad"}]})
        memory_sink.script(SinkResponse(207, body))

        result = engine.deliver_batch([_payload(1), _payload(2)])

        assert not result.success
        assert result.status == DeliveryStatus.PARTIAL
        assert result.delivered_count == 1
        assert result.failed_count == 1
        assert engine.circuit_breaker.failure_count == 0

    def test_all_accepted(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(SinkResponse(207, json.dumps({"results": [{"status": "success"}, {"status": 201}]})))
        result = engine.deliver_batch([_payload(1), _payload(2)])
        assert result.success
        assert result.delivered_count == 2

    def test_malformed_body(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(SinkResponse(207, "<html>oops</html>"))
        result = engine.deliver(_payload())
        assert result.status == DeliveryStatus.PARTIAL
        assert result.error == "Invalid response format"

    @pytest.mark.parametrize(
        ("body", "total", "expected"),
        [
            ('{"results": [{"status": 200}, {"status": 500}]}', 2, (1, 1)),
            ('{"results": [{"status": "ok"}]}', 3, (1, 2)),
            ('{"results": [{"status": true}]}', 1, (0, 1)),
            ('{"results": "nope"}', 1, None),
            ("[]", 1, None),
            ("not json", 1, None),
        ],
    )
    def test_parse_multi_status(self, body: str, total: int, expected: tuple[int, int] | None) -> None:
        assert parse_multi_status(body, total) == expected


class TestNoEndpoint:
    def test_no_sink_reports_no_endpoint(self) -> None:
        engine = DeliveryEngine(None)
        try:
            result = engine.deliver(_payload())
            assert not result.success
            assert result.status == DeliveryStatus.NO_ENDPOINT
            assert engine.health_status()["healthy"] is False
            assert engine.metrics()["total_requests"] == 0
        finally:
            engine.shutdown()


# =============================================================================
# Circuit breaker
# =============================================================================


class TestCircuitBreakerIntegration:
    def test_opens_after_threshold_and_fails_fast(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.configure({"status_code": 500})
        for _ in range(3):
            assert engine.deliver(_payload()).status == DeliveryStatus.FAILED
        transmissions = len(memory_sink.requests)

        result = engine.deliver(_payload())

        assert result.status == DeliveryStatus.CIRCUIT_OPEN
        assert len(memory_sink.requests) == transmissions
        assert engine.metrics()["circuit_breaker_rejections"] == 1
        assert engine.health_status()["circuit_breaker_state"] == "open"
        assert engine.health_status()["healthy"] is False

    def test_recovers_through_half_open(self, engine: DeliveryEngine, memory_sink: MemorySink, mock_clock: MockClock) -> None:
        memory_sink.configure({"status_code": 500})
        for _ in range(3):
            engine.deliver(_payload())
        assert engine.circuit_breaker.state == CircuitState.OPEN

        mock_clock.advance(60.0)
        memory_sink.configure({"status_code": 200})
        result = engine.deliver(_payload())

        assert result.success
        assert engine.circuit_breaker.state == CircuitState.CLOSED

    def test_failed_probe_reopens(self, engine: DeliveryEngine, memory_sink: MemorySink, mock_clock: MockClock) -> None:
        memory_sink.configure({"status_code": 500})
        for _ in range(3):
            engine.deliver(_payload())

        mock_clock.advance(60.0)
        engine.deliver(_payload())

        assert engine.circuit_breaker.state == CircuitState.OPEN
        assert engine.deliver(_payload()).status == DeliveryStatus.CIRCUIT_OPEN


# =============================================================================
# Wire format
# =============================================================================


class TestWireFormat:
    def test_default_headers(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        engine.deliver(_payload())
        headers = memory_sink.requests[0].headers

        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == f"tracelink/{__version__}"
        assert headers["X-Tracelink-Agent"] == "python"
        assert headers["X-Tracelink-Version"] == __version__
        assert headers["X-Tracelink-Service"] == "checkout"
        assert headers["X-Tracelink-Environment"] == "test"
        assert "Content-Encoding" not in headers

    def test_extra_headers(self, memory_sink: MemorySink) -> None:
        engine = DeliveryEngine(memory_sink, headers={"Authorization": "Bearer t0ken"})
        try:
            engine.deliver(_payload())
        finally:
            engine.shutdown()
        assert memory_sink.requests[0].headers["Authorization"] == "Bearer t0ken"

    def test_large_batch_gzipped(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        batch = [_payload(i, note="x" * 200) for i in range(20)]
        result = engine.deliver_batch(batch)

        assert result.compressed
        assert memory_sink.requests[0].headers["Content-Encoding"] == "gzip"
        assert memory_sink.events == batch

    def test_timeout_passed_to_connection(self, memory_sink: MemorySink) -> None:
        engine = DeliveryEngine(memory_sink, timeout=7.5)
        try:
            engine.deliver(_payload())
        finally:
            engine.shutdown()
        assert memory_sink.requests[0].timeout == 7.5


# =============================================================================
# Monitoring
# =============================================================================


class TestMetrics:
    def test_counters(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(200, 400, 503, 200)
        engine.deliver_batch([_payload(1), _payload(2)])
        engine.deliver(_payload(3))
        engine.deliver(_payload(4))

        metrics = engine.metrics()
        assert metrics["total_requests"] == 3
        assert metrics["successful_requests"] == 2
        assert metrics["failed_requests"] == 1
        assert metrics["total_retries"] == 1
        assert metrics["events_delivered"] == 3
        assert metrics["events_failed"] == 1
        assert metrics["batches_sent"] == 3
        assert metrics["bytes_sent"] > 0
        assert metrics["average_response_time"] >= 0.0

    def test_health_snapshot(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        memory_sink.script(200, 400)
        engine.deliver(_payload(1))
        engine.deliver(_payload(2))

        health = engine.health_status()
        assert health["healthy"] is True
        assert health["circuit_breaker_state"] == "closed"
        assert health["recent_successes"] == 1
        assert health["recent_failures"] == 1
        assert health["last_success_at"] is not None
        assert health["last_error"] == "HTTP 400"
        assert health["connection_pool"]["created"] == 1
        assert health["queue_maxsize"] == 50


# =============================================================================
# Background batching
# =============================================================================


class TestBatching:
    def test_enqueue_and_flush(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        for i in range(25):
            assert engine.enqueue(_payload(i))

        assert engine.flush(timeout=5.0)

        assert len(memory_sink.events) == 25
        assert all(len(batch) <= 10 for batch in memory_sink.batches)

    def test_shutdown_delivers_pending(self, engine: DeliveryEngine, memory_sink: MemorySink) -> None:
        for i in range(3):
            engine.enqueue(_payload(i))
        engine.shutdown()

        assert len(memory_sink.events) == 3
        assert memory_sink.closed

    def test_enqueue_after_shutdown_rejected(self, engine: DeliveryEngine) -> None:
        engine.shutdown()
        assert engine.enqueue(_payload()) is False

    def test_shutdown_idempotent(self, engine: DeliveryEngine) -> None:
        engine.shutdown()
        engine.shutdown()
        assert engine.health_status()["healthy"] is False


# =============================================================================
# Settings
# =============================================================================


class TestFromSettings:
    def test_settings_applied(self, memory_sink: MemorySink) -> None:
        settings = TracelinkSettings(
            platform=PlatformSettings(service_name="billing", environment="prod"),
            delivery=DeliverySettings(retry_attempts=0, circuit_breaker_threshold=1),
            performance=PerformanceSettings(compression_enabled=False, event_buffer_size=7),
        )
        engine = DeliveryEngine.from_settings(settings, memory_sink, sleep=lambda _: None)
        try:
            memory_sink.script(503)
            result = engine.deliver(_payload())

            assert result.retry_count == 0
            assert engine.circuit_breaker.state == CircuitState.OPEN
            assert engine.health_status()["queue_maxsize"] == 7
            assert memory_sink.requests[0].headers["X-Tracelink-Service"] == "billing"
        finally:
            engine.shutdown()

    def test_explicit_retry_config(self, memory_sink: MemorySink, sleeps: list[float]) -> None:
        engine = DeliveryEngine(memory_sink, retry_config=RetryConfig.no_retry(), sleep=sleeps.append)
        try:
            memory_sink.script(503)
            assert engine.deliver(_payload()).retry_count == 0
        finally:
            engine.shutdown()
        assert sleeps == []
