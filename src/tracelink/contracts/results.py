"""Result values that cross the processor/engine/adapter boundaries."""

from dataclasses import dataclass
from typing import Any, TypedDict

from tracelink.contracts.enums import DeliveryStatus

# Wire-ready event representation produced by EventProcessor.process().
# A plain JSON-compatible dict so DeliveryEngine stays decoupled from the
# event and correlation types.
ProcessedEvent = dict[str, Any]


class ProcessingRecord(TypedDict):
    """Schema of the ``processing`` key attached to every ProcessedEvent."""

    security_applied: bool
    sanitized_fields: list[str]  # Dotted paths, sequence items as path[i]
    processor_version: str
    sampled: bool
    sample_rate: float
    processed_at: str  # ISO 8601 UTC


@dataclass(frozen=True, slots=True)
class SinkResponse:
    """Collector answer to one transmission.

    Attributes:
        status_code: HTTP-style status code
        body: Response body decoded as text (may be empty)
    """

    status_code: int
    body: str = ""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of one deliver()/deliver_batch() call.

    A failed delivery is a value, never an exception: adapters check
    ``success`` and carry on.

    Attributes:
        success: True if the collector accepted the transmission (2xx)
        status: Outcome classification
        status_code: Last collector status code, None if no response arrived
        error: Human-readable failure description, None on success
        retry_count: Retries performed after the first attempt
        response_time: Wall time spent in seconds, including backoff
        delivered_count: Events the collector accepted
        failed_count: Events the collector did not accept
        compressed: Whether the body was sent gzip-compressed
    """

    success: bool
    status: DeliveryStatus
    status_code: int | None = None
    error: str | None = None
    retry_count: int = 0
    response_time: float = 0.0
    delivered_count: int = 0
    failed_count: int = 0
    compressed: bool = False

    @property
    def failure(self) -> bool:
        return not self.success
