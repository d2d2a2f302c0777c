# src/tracelink/events/universal.py
"""UniversalEvent: the single immutable event shape used everywhere.

HTTP requests, data changes and job executions all become UniversalEvents.
Every event carries a snapshot of the correlation context that was active
when it was built, so events from different components can be joined on
``correlation.primary_correlation_id`` and ordered by ``correlation.chain``.

Construction never fails because of bad input. Validity is a separately
queryable property (is_valid()/validate()), and EventProcessor is the single
place where invalid events are rejected.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from tracelink.contracts.errors import EventValidationError
from tracelink.correlation.context import CorrelationContext
from tracelink.correlation.manager import current_context
from tracelink.events.platform import PlatformInfo, detect_platform

EVENT_TYPE_PATTERN = re.compile(r"[a-z][a-z0-9]*\.[a-z][a-z0-9_]*")
EVENT_ID_PREFIX = "evt_"

# Chain entry for the minimal context synthesized when none is active.
UNCORRELATED_COMPONENT = "uncorrelated"


def new_event_id() -> str:
    return f"{EVENT_ID_PREFIX}{uuid.uuid4().hex}"


def freeze(value: Any) -> Any:
    """Recursively convert mappings to read-only mappings and sequences to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze(): plain dicts and lists, safe for the caller to mutate."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def _resolve_correlation(correlation: CorrelationContext | Mapping[str, Any] | None) -> Mapping[str, Any]:
    if isinstance(correlation, CorrelationContext):
        return freeze(correlation.to_snapshot())
    if isinstance(correlation, Mapping) and correlation:
        return freeze(correlation)
    active = current_context()
    if active is not None:
        return freeze(active.to_snapshot())
    synthesized = CorrelationContext.root(UNCORRELATED_COMPONENT, metadata={"synthesized": True})
    return freeze(synthesized.to_snapshot())


def _has_identifier(mapping: Mapping[str, Any], key: str) -> bool:
    value = mapping.get(key)
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return isinstance(value, int)


@dataclass(frozen=True, slots=True)
class UniversalEvent:
    """A self-describing, immutable record of something that happened.

    Attributes:
        event_type: Dotted domain.verb string, e.g. "data.change"
        action: Human-readable description of what happened
        actor: Who or what caused the event; needs "type" and "id"
        subject: What was acted upon; needs "type" when present
        metadata: Event-specific payload (nested mappings and sequences)
        correlation: Snapshot of the correlation context (plain data). When
            omitted, the current execution unit's context is captured; when
            there is none, a minimal root context is synthesized.
        platform: Emitting service identity; detected when omitted
        event_id: Unique identifier prefixed "evt_"
        timestamp: UTC creation instant

    Example:
        event = UniversalEvent(
            event_type="data.change",
            action="order.updated",
            actor={"type": "user", "id": "42"},
            subject={"type": "order", "id": "1001"},
            metadata={"changes": {"status": ["pending", "paid"]}},
        )
    """

    event_type: str
    action: str
    actor: Mapping[str, Any]
    subject: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    correlation: Mapping[str, Any] | CorrelationContext | None = None
    platform: PlatformInfo | None = None
    event_id: str = field(default_factory=new_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "actor", freeze(self.actor))
        object.__setattr__(self, "subject", freeze(self.subject) if self.subject is not None else None)
        object.__setattr__(self, "metadata", freeze(self.metadata) if self.metadata is not None else MappingProxyType({}))
        object.__setattr__(self, "correlation", _resolve_correlation(self.correlation))
        if self.platform is None:
            object.__setattr__(self, "platform", detect_platform())
        if isinstance(self.timestamp, datetime) and self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=UTC))

    @property
    def correlation_id(self) -> str:
        """Flat correlation id of the hop that emitted this event."""
        return str(self.correlation["correlation_id"])  # type: ignore[index]

    @property
    def primary_correlation_id(self) -> str:
        return str(self.correlation["primary_correlation_id"])  # type: ignore[index]

    @property
    def validation_errors(self) -> list[str]:
        """Every schema violation, in check order. Empty when valid."""
        errors: list[str] = []

        if not isinstance(self.event_id, str) or not self.event_id.startswith(EVENT_ID_PREFIX) or len(self.event_id) == len(EVENT_ID_PREFIX):
            errors.append(f"event_id must be a string prefixed '{EVENT_ID_PREFIX}'")

        if not isinstance(self.event_type, str) or EVENT_TYPE_PATTERN.fullmatch(self.event_type) is None:
            errors.append("event_type must match pattern 'domain.verb' (e.g., 'data.change')")

        if not isinstance(self.action, str) or not self.action.strip():
            errors.append("action must be a non-empty string")

        if not isinstance(self.actor, Mapping):
            errors.append("actor must be a mapping")
        else:
            if not _has_identifier(self.actor, "type"):
                errors.append("actor must have type")
            if not _has_identifier(self.actor, "id"):
                errors.append("actor must have id")

        if self.subject is not None:
            if not isinstance(self.subject, Mapping):
                errors.append("subject must be a mapping when provided")
            elif not _has_identifier(self.subject, "type"):
                errors.append("subject must have type")

        if not isinstance(self.metadata, Mapping):
            errors.append("metadata must be a mapping")

        if not isinstance(self.timestamp, datetime):
            errors.append("timestamp must be a datetime")

        return errors

    def is_valid(self) -> bool:
        return not self.validation_errors

    def validate(self) -> None:
        """Raise if the event violates its schema. Never mutates the event.

        Raises:
            EventValidationError: Listing every violation found
        """
        errors = self.validation_errors
        if errors:
            raise EventValidationError(errors)

    def to_dict(self) -> dict[str, Any]:
        """Deep plain-data copy of the event, JSON-compatible where inputs are."""
        data: dict[str, Any] = {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat() if isinstance(self.timestamp, datetime) else self.timestamp,
            "event_type": self.event_type,
            "action": self.action,
            "actor": thaw(self.actor),
        }
        if self.subject is not None:
            data["subject"] = thaw(self.subject)
        data["correlation"] = thaw(self.correlation)
        data["metadata"] = thaw(self.metadata)
        data["platform"] = self.platform.to_dict() if self.platform is not None else None
        return data
