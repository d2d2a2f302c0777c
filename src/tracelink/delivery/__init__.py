"""Delivery of processed events to a collector.

Components:
- engine: DeliveryEngine (breaker, pool, compression, retries, batching)
- breaker: CircuitBreaker three-state machine
- pool: ConnectionPool bounded connection reuse
- batcher: BatchWorker background batching thread
- retry: RetryManager tenacity-based backoff
- sinks: built-in transmit steps (http, memory), discovered via pluggy

Usage:
    from tracelink.delivery import DeliveryEngine
    from tracelink.delivery.sinks import MemorySink

    sink = MemorySink()
    sink.configure({})
    engine = DeliveryEngine(sink)
    result = engine.deliver(payload)
"""

from tracelink.delivery.batcher import BatchWorker
from tracelink.delivery.breaker import CircuitBreaker
from tracelink.delivery.compression import maybe_compress
from tracelink.delivery.engine import DEFAULT_RETRYABLE_STATUSES, DeliveryEngine, parse_multi_status
from tracelink.delivery.pool import ConnectionPool
from tracelink.delivery.protocols import SinkConnection, SinkProtocol
from tracelink.delivery.retry import MaxRetriesExceeded, RetryConfig, RetryManager

__all__ = [
    "DEFAULT_RETRYABLE_STATUSES",
    "BatchWorker",
    "CircuitBreaker",
    "ConnectionPool",
    "DeliveryEngine",
    "MaxRetriesExceeded",
    "RetryConfig",
    "RetryManager",
    "SinkConnection",
    "SinkProtocol",
    "maybe_compress",
    "parse_multi_status",
]
