# src/tracelink/processing/processor.py
"""EventProcessor: turn a UniversalEvent into a safe, size-bounded payload.

Pipeline (fixed order, each stage may short-circuit):
0. Schema validation   - invalid event raises EventValidationError
1. Sampling            - sampled out returns None
2. Field-name redaction (always on)
3. Pattern PII redaction (when auto_detect_pii)
4. Size enforcement    - oversized payload raises PayloadTooLargeError
5. Processing record   - ``processing`` key attached

Envelope fields (event_id, timestamp, event_type, correlation, platform)
are produced by the agent itself and are not pattern-scanned. Field-name
redaction still covers the whole ``correlation`` mapping, so a session_id
carried from the originating request never ships in clear text.

Thread Safety:
    process() holds no mutable state of its own and may be called from any
    number of threads concurrently.
"""

from __future__ import annotations

import json
import random
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from tracelink.contracts.enums import SamplingMode
from tracelink.contracts.errors import PayloadTooLargeError
from tracelink.contracts.results import ProcessedEvent, ProcessingRecord
from tracelink.processing.redaction import REDACTION_MARKER, FieldRedactor, PatternRedactor
from tracelink.processing.sampling import Sampler

if TYPE_CHECKING:
    from tracelink.core.config import TracelinkSettings
    from tracelink.events.universal import UniversalEvent

logger = structlog.get_logger(__name__)

PROCESSOR_VERSION = "1.0.0"
DEFAULT_MAX_PAYLOAD_SIZE = 64 * 1024

ENVELOPE_FIELDS = frozenset({"event_id", "timestamp", "event_type", "correlation", "platform"})


def serialized_size(payload: Any) -> int:
    """UTF-8 byte length of the compact JSON encoding of ``payload``."""
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    return len(encoded.encode("utf-8"))


class EventProcessor:
    """Sampling, redaction and size-limit pipeline.

    Example:
        processor = EventProcessor(sample_rate=0.5, sampling_mode=SamplingMode.DETERMINISTIC)
        try:
            payload = processor.process(event)
        except PayloadTooLargeError:
            payload = None  # drop, never propagate to the host application
    """

    def __init__(
        self,
        *,
        sample_rate: float = 1.0,
        sampling_mode: SamplingMode = SamplingMode.PROBABILISTIC,
        max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
        auto_detect_pii: bool = True,
        sensitive_fields: Iterable[str] = (),
        custom_patterns: Mapping[str, str | re.Pattern[str]] | None = None,
        redaction_marker: str = REDACTION_MARKER,
        rng: random.Random | None = None,
    ) -> None:
        if max_payload_size <= 0:
            raise ValueError(f"max_payload_size must be > 0, got {max_payload_size}")
        self._sampler = Sampler(sample_rate, sampling_mode, rng=rng)
        self._max_payload_size = max_payload_size
        self._auto_detect_pii = auto_detect_pii
        self._field_redactor = FieldRedactor(sensitive_fields, marker=redaction_marker)
        self._pattern_redactor = PatternRedactor(custom_patterns, marker=redaction_marker)

    @classmethod
    def from_settings(cls, settings: TracelinkSettings, *, rng: random.Random | None = None) -> EventProcessor:
        security = settings.security
        performance = settings.performance
        return cls(
            sample_rate=performance.sample_rate,
            sampling_mode=performance.sampling_mode,
            max_payload_size=security.max_event_size,
            auto_detect_pii=security.auto_detect_pii,
            sensitive_fields=security.sensitive_fields,
            custom_patterns=security.custom_pii_patterns,
            redaction_marker=security.redaction_marker,
            rng=rng,
        )

    @property
    def sample_rate(self) -> float:
        return self._sampler.rate

    @property
    def max_payload_size(self) -> int:
        return self._max_payload_size

    @property
    def auto_detect_pii(self) -> bool:
        return self._auto_detect_pii

    def process(self, event: UniversalEvent) -> ProcessedEvent | None:
        """Run the pipeline on one event.

        Returns:
            The wire-ready payload, or None if the event was sampled out

        Raises:
            EventValidationError: If the event violates its schema
            PayloadTooLargeError: If the redacted payload exceeds the limit
        """
        event.validate()

        if not self._sampler.should_keep(event.event_id):
            return None

        payload = event.to_dict()
        sanitized_fields = self._redact(payload)

        size = serialized_size(payload)
        if size > self._max_payload_size:
            logger.debug(
                "Event rejected for size",
                event_id=event.event_id,
                event_type=event.event_type,
                size=size,
                limit=self._max_payload_size,
            )
            raise PayloadTooLargeError(size, self._max_payload_size)

        record: ProcessingRecord = {
            "security_applied": True,
            "sanitized_fields": sanitized_fields,
            "processor_version": PROCESSOR_VERSION,
            "sampled": True,
            "sample_rate": self._sampler.rate,
            "processed_at": datetime.now(UTC).isoformat(),
        }
        payload["processing"] = record
        return payload

    def _redact(self, payload: dict[str, Any]) -> list[str]:
        # Shallow view of the non-envelope keys; nested values are shared
        body = {key: value for key, value in payload.items() if key not in ENVELOPE_FIELDS}

        touched = self._field_redactor.redact(body)
        correlation = payload.get("correlation")
        if isinstance(correlation, dict):
            touched.extend(self._field_redactor.redact(correlation, "correlation"))

        if self._auto_detect_pii:
            touched.extend(self._pattern_redactor.redact(body))

        payload.update(body)

        # A path may be hit by several patterns; report it once
        return list(dict.fromkeys(touched))
