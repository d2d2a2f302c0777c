# src/tracelink/correlation/context.py
"""Immutable correlation context values.

A CorrelationContext describes one hop in a causal flow: which component is
doing work, which hop started the flow, and how we got here. Contexts are
never mutated. Every derivation (child, inheritance) produces a new value,
which is what makes them safe to hand between threads and tasks.

Invariants (enforced in __post_init__):
- depth == len(chain) - 1
- chain is non-empty
- primary_correlation_id == correlation_id for root contexts (depth 0
  without a parent)
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

# Chain entry used when rebuilding a context from a legacy flat snapshot
# that carries no chain of its own.
EXTERNAL_COMPONENT = "external"

_SCALAR_TYPES = (str, int, float, bool, type(None))


def new_correlation_id() -> str:
    """Mint a fresh hop identifier."""
    return f"corr_{uuid.uuid4().hex}"


def _freeze_metadata(metadata: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Copy metadata into a read-only mapping of string keys to scalars.

    Non-scalar values are stored as their string form so that snapshots stay
    JSON-safe and hashable-free structures never leak into the context.
    """
    if not metadata:
        return MappingProxyType({})
    frozen: dict[str, Any] = {}
    for key, value in metadata.items():
        if isinstance(value, datetime):
            frozen[str(key)] = value.isoformat()
        elif isinstance(value, _SCALAR_TYPES):
            frozen[str(key)] = value
        else:
            frozen[str(key)] = str(value)
    return MappingProxyType(frozen)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return datetime.now(UTC)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    """Where in the causal graph the current unit of work sits.

    Attributes:
        correlation_id: Unique identifier of this hop
        primary_correlation_id: Identifier of the root hop of the whole flow
        chain: Component names visited so far, root first
        depth: Hop count (len(chain) - 1)
        flow_id: Business-flow identifier, e.g. "order_fulfillment:42"
        parent_flow_id: Flow identifier of the context this one derives from
        session_id: Session identifier carried from the originating request
        request_id: Request identifier carried from the originating request
        parent_correlation_id: correlation_id of the immediate parent hop
        metadata: Read-only string -> scalar mapping
        started_at: UTC creation instant
    """

    correlation_id: str
    primary_correlation_id: str
    chain: tuple[str, ...]
    depth: int
    flow_id: str | None = None
    parent_flow_id: str | None = None
    session_id: str | None = None
    request_id: str | None = None
    parent_correlation_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.chain:
            raise ValueError("CorrelationContext.chain must contain at least one component")
        if self.depth != len(self.chain) - 1:
            raise ValueError(f"CorrelationContext.depth must equal len(chain) - 1, got depth={self.depth} for chain={self.chain!r}")
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", _freeze_metadata(self.metadata))

    @property
    def is_root(self) -> bool:
        return self.parent_correlation_id is None and self.depth == 0

    @classmethod
    def root(
        cls,
        component: str,
        *,
        flow_id: str | None = None,
        session_id: str | None = None,
        request_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> CorrelationContext:
        """Create a root context whose primary id is its own id."""
        correlation_id = new_correlation_id()
        return cls(
            correlation_id=correlation_id,
            primary_correlation_id=correlation_id,
            chain=(component,),
            depth=0,
            flow_id=flow_id,
            session_id=session_id,
            request_id=request_id,
            metadata=_freeze_metadata(metadata),
        )

    def derive(
        self,
        component: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> CorrelationContext:
        """Create the next hop: new id, same primary, component appended.

        Parent metadata is carried forward and overlaid with ``metadata``.
        """
        merged = dict(self.metadata)
        if metadata:
            merged.update(metadata)
        return CorrelationContext(
            correlation_id=new_correlation_id(),
            primary_correlation_id=self.primary_correlation_id,
            chain=(*self.chain, component),
            depth=self.depth + 1,
            flow_id=self.flow_id,
            parent_flow_id=self.flow_id,
            session_id=self.session_id,
            request_id=self.request_id,
            parent_correlation_id=self.correlation_id,
            metadata=_freeze_metadata(merged),
        )

    def to_snapshot(self) -> dict[str, Any]:
        """Plain JSON-safe copy for crossing an execution-unit boundary."""
        return {
            "correlation_id": self.correlation_id,
            "primary_correlation_id": self.primary_correlation_id,
            "flow_id": self.flow_id,
            "parent_flow_id": self.parent_flow_id,
            "session_id": self.session_id,
            "request_id": self.request_id,
            "parent_correlation_id": self.parent_correlation_id,
            "chain": list(self.chain),
            "depth": self.depth,
            "metadata": dict(self.metadata),
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> CorrelationContext:
        """Rebuild a context from to_snapshot() output.

        A legacy flat snapshot carrying only ``correlation_id`` is read as a
        root hop of an external component: its primary id defaults to its
        own id and its chain to (EXTERNAL_COMPONENT,).

        Raises:
            ValueError: If the snapshot has no correlation_id
        """
        correlation_id = snapshot.get("correlation_id")
        if not isinstance(correlation_id, str) or not correlation_id:
            raise ValueError(f"Correlation snapshot is missing correlation_id: {dict(snapshot)!r}")

        raw_chain = snapshot.get("chain")
        chain = tuple(str(c) for c in raw_chain) if raw_chain else (EXTERNAL_COMPONENT,)
        metadata = snapshot.get("metadata")

        return cls(
            correlation_id=correlation_id,
            primary_correlation_id=snapshot.get("primary_correlation_id") or correlation_id,
            chain=chain,
            depth=len(chain) - 1,
            flow_id=snapshot.get("flow_id"),
            parent_flow_id=snapshot.get("parent_flow_id"),
            session_id=snapshot.get("session_id"),
            request_id=snapshot.get("request_id"),
            parent_correlation_id=snapshot.get("parent_correlation_id"),
            metadata=_freeze_metadata(metadata if isinstance(metadata, Mapping) else None),
            started_at=_parse_timestamp(snapshot.get("started_at")),
        )
