"""Status codes and modes shared across subsystem boundaries."""

from enum import StrEnum


class CircuitState(StrEnum):
    """State of the delivery circuit breaker.

    Reported verbatim in DeliveryEngine.health_status().
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SamplingMode(StrEnum):
    """How EventProcessor decides whether to keep an event.

    Values:
        PROBABILISTIC: Uniform random draw per processing call
        DETERMINISTIC: Pure function of the event_id, stable across reprocessing
    """

    PROBABILISTIC = "probabilistic"
    DETERMINISTIC = "deterministic"


class DeliveryStatus(StrEnum):
    """Outcome classification carried by DeliveryResult."""

    DELIVERED = "delivered"
    PARTIAL = "partial"
    CIRCUIT_OPEN = "circuit_open"
    REJECTED = "rejected"  # Non-retryable response (4xx class)
    FAILED = "failed"  # Retryable failure that exhausted its retries
    NO_ENDPOINT = "no_endpoint"
    EMPTY = "empty"
