# tests/unit/test_event_writer.py
"""Tests for EventWriter, the adapter-facing process-and-enqueue entry point."""

from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from tracelink.delivery.engine import DeliveryEngine
from tracelink.delivery.sinks.memory import MemorySink
from tracelink.processing.processor import EventProcessor
from tracelink.writer import EventWriter


@pytest.fixture
def writer(engine: DeliveryEngine) -> Iterator[EventWriter]:
    event_writer = EventWriter(EventProcessor(max_payload_size=4096), engine)
    yield event_writer
    event_writer.close()


class TestLog:
    def test_valid_event_queued_and_delivered(self, writer: EventWriter, memory_sink: MemorySink, make_event: Any) -> None:
        ev = make_event(metadata={"password": "hunter2"})
        assert writer.log(ev) is True
        assert writer.flush(timeout=5.0)

        delivered = memory_sink.events
        assert [e["event_id"] for e in delivered] == [ev.event_id]
        assert delivered[0]["metadata"]["password"] == "[REDACTED]"
        assert delivered[0]["processing"]["security_applied"] is True

    def test_sampled_out_counted_as_filtered(self, engine: DeliveryEngine, make_event: Any) -> None:
        writer = EventWriter(EventProcessor(sample_rate=0.0), engine)
        assert writer.log(make_event()) is False
        assert writer.metrics()["filtered"] == 1
        assert writer.metrics()["dropped"] == 0

    def test_oversized_event_dropped_not_raised(self, writer: EventWriter, make_event: Any) -> None:
        with patch("tracelink.writer.logger") as mock_logger:
            assert writer.log(make_event(metadata={"blob": "x" * 10_000})) is False
        assert writer.metrics()["dropped"] == 1
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.kwargs["limit"] == 4096

    def test_invalid_event_dropped_not_raised(self, writer: EventWriter, make_event: Any) -> None:
        with patch("tracelink.writer.logger") as mock_logger:
            assert writer.log(make_event(action="")) is False
        assert writer.metrics()["dropped"] == 1
        assert mock_logger.warning.call_args.kwargs["errors"] == ["action must be a non-empty string"]

    def test_unexpected_failure_isolated(self, engine: DeliveryEngine, make_event: Any) -> None:
        processor = MagicMock(spec=EventProcessor)
        processor.process.side_effect = RuntimeError("boom")
        writer = EventWriter(processor, engine)

        with patch("tracelink.writer.logger") as mock_logger:
            assert writer.log(make_event()) is False

        assert writer.metrics()["errors"] == 1
        mock_logger.error.assert_called_once()

    def test_buffer_full_counted_as_dropped(self, make_event: Any) -> None:
        engine = MagicMock(spec=DeliveryEngine)
        engine.enqueue.return_value = False
        engine.metrics.return_value = {}
        writer = EventWriter(EventProcessor(), engine)

        assert writer.log(make_event()) is False
        assert writer.metrics()["dropped"] == 1


class TestMetrics:
    def test_counters_and_delivery(self, writer: EventWriter, make_event: Any) -> None:
        writer.log(make_event())
        writer.log(make_event(action=""))

        metrics = writer.metrics()
        assert metrics["received"] == 2
        assert metrics["queued"] == 1
        assert metrics["dropped"] == 1
        assert "events_delivered" in metrics["delivery"]


class TestClose:
    def test_close_delivers_pending_and_is_idempotent(self, writer: EventWriter, memory_sink: MemorySink, make_event: Any) -> None:
        writer.log(make_event())
        writer.close()
        writer.close()
        assert len(memory_sink.events) == 1

    def test_log_after_close(self, writer: EventWriter, make_event: Any) -> None:
        writer.close()
        assert writer.log(make_event()) is False
        assert writer.metrics()["dropped"] == 1
