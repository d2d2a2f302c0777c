# src/tracelink/delivery/protocols.py
"""Protocol definitions for delivery sinks.

A sink is the transmit step of the DeliveryEngine: it knows how to move one
already-encoded batch body to a collector. Everything around it (pooling,
retries, circuit breaking, batching, compression) lives in the engine.
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from tracelink.contracts.results import SinkResponse


@runtime_checkable
class SinkConnection(Protocol):
    """One reusable transport connection, owned by a ConnectionPool."""

    def send(self, body: bytes, headers: Mapping[str, str], *, timeout: float) -> SinkResponse:
        """Transmit one batch body.

        Any HTTP-style answer, including 4xx/5xx, is returned as a
        SinkResponse. Only failures that produced no answer raise.

        Raises:
            TransportError: On network errors and timeouts
        """
        ...

    def close(self) -> None:
        """Release the connection. Must be idempotent."""
        ...


@runtime_checkable
class SinkProtocol(Protocol):
    """Protocol for delivery sinks.

    Sinks are discovered via pluggy hooks and selected by the
    ``delivery.sink`` setting.

    Lifecycle:
        1. Discovery: tracelink_get_sinks hook returns sink classes
        2. Instantiation: the factory creates one instance
        3. Configuration: configure() called with sink-specific settings
        4. Operation: open_connection() called by the pool as needed
        5. Shutdown: close() called by DeliveryEngine.shutdown()

    Error handling:
        - configure() MUST raise SinkConfigurationError on invalid config
        - connections MUST NOT raise anything but TransportError from send()
        - close() MUST be idempotent
    """

    @property
    def name(self) -> str:
        """Sink name matched against ``delivery.sink``."""
        ...

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the sink.

        Raises:
            SinkConfigurationError: If configuration is invalid or incomplete
        """
        ...

    def open_connection(self) -> SinkConnection:
        """Create a new connection. Called by the pool, at most max_size times."""
        ...

    def close(self) -> None:
        """Release sink-wide resources."""
        ...
