"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to the rest of
tracelink. Settings classes live in tracelink.core.config.

Import patterns:
    from tracelink.contracts import DeliveryResult, CircuitState, PayloadTooLargeError
"""

from tracelink.contracts.enums import CircuitState, DeliveryStatus, SamplingMode
from tracelink.contracts.errors import (
    ConfigurationError,
    EventValidationError,
    NoActiveContextError,
    PayloadTooLargeError,
    SinkConfigurationError,
    TracelinkError,
    TransportError,
)
from tracelink.contracts.results import (
    DeliveryResult,
    ProcessedEvent,
    ProcessingRecord,
    SinkResponse,
)

__all__ = [
    "CircuitState",
    "ConfigurationError",
    "DeliveryResult",
    "DeliveryStatus",
    "EventValidationError",
    "NoActiveContextError",
    "PayloadTooLargeError",
    "ProcessedEvent",
    "ProcessingRecord",
    "SamplingMode",
    "SinkConfigurationError",
    "SinkResponse",
    "TracelinkError",
    "TransportError",
]
