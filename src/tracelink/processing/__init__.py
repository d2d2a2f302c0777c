"""Event processing: sampling, PII redaction and size enforcement.

Usage:
    from tracelink.processing import EventProcessor

    processor = EventProcessor.from_settings(settings)
    payload = processor.process(event)  # None when sampled out
"""

from tracelink.processing.processor import PROCESSOR_VERSION, EventProcessor, serialized_size
from tracelink.processing.redaction import (
    DEFAULT_PII_PATTERNS,
    DEFAULT_SENSITIVE_FIELDS,
    REDACTION_MARKER,
    FieldRedactor,
    PatternRedactor,
)
from tracelink.processing.sampling import Sampler, deterministic_fraction

__all__ = [
    "DEFAULT_PII_PATTERNS",
    "DEFAULT_SENSITIVE_FIELDS",
    "PROCESSOR_VERSION",
    "REDACTION_MARKER",
    "EventProcessor",
    "FieldRedactor",
    "PatternRedactor",
    "Sampler",
    "deterministic_fraction",
    "serialized_size",
]
