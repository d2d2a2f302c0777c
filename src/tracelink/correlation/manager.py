# src/tracelink/correlation/manager.py
"""CorrelationManager: execution-unit-local correlation context.

Context storage is a single ContextVar. Python gives every thread its own
context and copies the context into every asyncio task at creation, so
writes made by one execution unit are never visible to another. No locks
are needed for the slot itself.

Crossing a boundary (queued job, thread pool hand-off) is always explicit:

    snapshot = manager.extract_correlation_data()
    ...                                   # hand snapshot to the other unit
    manager.inherit_context(snapshot, "job")

Thread Safety:
    All operations are safe to call concurrently from any thread or task.
    CorrelationContext values are immutable; the only mutable state is the
    per-unit ContextVar slot.
"""

from __future__ import annotations

import functools
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

import structlog

from tracelink.contracts.errors import NoActiveContextError
from tracelink.correlation.context import CorrelationContext

if TYPE_CHECKING:
    from tracelink.core.config import CorrelationSettings

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

_CURRENT_CONTEXT: ContextVar[CorrelationContext | None] = ContextVar("tracelink_correlation_context", default=None)


def current_context() -> CorrelationContext | None:
    """Return the context active in this execution unit, or None."""
    return _CURRENT_CONTEXT.get()


class CorrelationManager:
    """Creates, derives, snapshots and restores correlation contexts.

    The manager holds configuration only (origin component, depth warning
    threshold). The active context lives in the execution-unit-local slot,
    so two managers with different settings still see the same current
    context within one unit.

    Example:
        manager = CorrelationManager(origin_component="web")
        root = manager.start_request_context("req_1", "sess_1")
        child = manager.create_child_context("database", "update")
        with manager.with_context(child):
            snapshot = manager.extract_correlation_data()
        # ... in a worker thread:
        job_ctx = manager.inherit_context(snapshot, "job")
    """

    def __init__(self, origin_component: str = "web", *, max_depth: int = 10) -> None:
        if not origin_component:
            raise ValueError("origin_component must be a non-empty string")
        if max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {max_depth}")
        self._origin_component = origin_component
        self._max_depth = max_depth

    @classmethod
    def from_settings(cls, settings: CorrelationSettings) -> CorrelationManager:
        return cls(settings.origin_component, max_depth=settings.max_correlation_depth)

    @property
    def origin_component(self) -> str:
        return self._origin_component

    # ------------------------------------------------------------------
    # Root contexts
    # ------------------------------------------------------------------

    def start_request_context(
        self,
        request_id: str,
        session_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        *,
        component: str | None = None,
    ) -> CorrelationContext:
        """Start a new root context for an incoming request.

        Replaces whatever context this execution unit held.
        """
        context = CorrelationContext.root(
            component or self._origin_component,
            session_id=session_id,
            request_id=request_id,
            metadata=metadata,
        )
        _CURRENT_CONTEXT.set(context)
        logger.debug(
            "Request context started",
            correlation_id=context.correlation_id,
            request_id=request_id,
        )
        return context

    def start_flow_context(
        self,
        flow_type: str,
        entity_id: str | int,
        metadata: Mapping[str, Any] | None = None,
        *,
        component: str | None = None,
    ) -> CorrelationContext:
        """Start a new root context for a business process.

        The flow_id is ``"{flow_type}:{entity_id}"``; flow_type and entity_id
        are also recorded in the context metadata.
        """
        flow_metadata: dict[str, Any] = dict(metadata or {})
        flow_metadata["flow_type"] = flow_type
        flow_metadata["entity_id"] = str(entity_id)
        context = CorrelationContext.root(
            component or self._origin_component,
            flow_id=f"{flow_type}:{entity_id}",
            metadata=flow_metadata,
        )
        _CURRENT_CONTEXT.set(context)
        logger.debug(
            "Flow context started",
            correlation_id=context.correlation_id,
            flow_id=context.flow_id,
        )
        return context

    # ------------------------------------------------------------------
    # Derivation and propagation
    # ------------------------------------------------------------------

    def create_child_context(
        self,
        component: str,
        operation: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> CorrelationContext:
        """Derive the next hop from the current context.

        The child is returned, not installed. Scope it with with_context().

        Raises:
            NoActiveContextError: If no context is active in this unit
        """
        parent = _CURRENT_CONTEXT.get()
        if parent is None:
            raise NoActiveContextError("create a child context")

        child_metadata: dict[str, Any] = dict(metadata or {})
        child_metadata["operation"] = operation
        child = parent.derive(component, metadata=child_metadata)
        self._check_depth(child)
        return child

    def extract_correlation_data(self, context: CorrelationContext | None = None) -> dict[str, Any]:
        """Serializable snapshot of the given (or current) context.

        Returns an empty dict when no context is active.
        """
        target = context if context is not None else _CURRENT_CONTEXT.get()
        if target is None:
            return {}
        return target.to_snapshot()

    def inherit_context(
        self,
        snapshot: Mapping[str, Any] | CorrelationContext | None,
        component: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> CorrelationContext:
        """Continue a flow handed over from another execution unit.

        Appends ``component`` to the snapshot's chain, records the parent's
        correlation_id as ``inherited_from`` and installs the result as the
        current context of this unit.

        An empty snapshot (the sender had no context) starts a fresh
        ``async`` flow rather than failing the receiving unit.

        Raises:
            ValueError: If a non-empty snapshot has no correlation_id
        """
        if not snapshot:
            logger.warning(
                "Inherited empty correlation snapshot",
                component=component,
                hint="Sender had no active context; starting an async flow",
            )
            return self.start_flow_context("async", uuid.uuid4().hex, metadata, component=component)

        parent = snapshot if isinstance(snapshot, CorrelationContext) else CorrelationContext.from_snapshot(snapshot)

        inherited_metadata: dict[str, Any] = dict(metadata or {})
        inherited_metadata["inherited_from"] = parent.correlation_id
        inherited_metadata["inherited_at"] = datetime.now(UTC).isoformat()
        context = parent.derive(component, metadata=inherited_metadata)
        self._check_depth(context)

        _CURRENT_CONTEXT.set(context)
        logger.debug(
            "Correlation context inherited",
            correlation_id=context.correlation_id,
            inherited_from=parent.correlation_id,
            depth=context.depth,
        )
        return context

    def restore_context(self, snapshot: Mapping[str, Any]) -> CorrelationContext | None:
        """Install a snapshot verbatim, without adding a hop.

        Returns None (and leaves the slot untouched) for an empty snapshot.
        """
        if not snapshot:
            return None
        context = CorrelationContext.from_snapshot(snapshot)
        _CURRENT_CONTEXT.set(context)
        return context

    def bind(self, fn: Callable[P, T], component: str) -> Callable[P, T]:
        """Wrap ``fn`` so it runs under a context inherited from the caller.

        The snapshot is taken now, in the calling unit. When the wrapper runs
        (typically in a worker thread) it inherits that snapshot for the
        duration of the call and then restores the worker's own context.

        Example:
            executor.submit(manager.bind(send_email, "mailer"), user_id)
        """
        snapshot = self.extract_correlation_data()

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            previous = _CURRENT_CONTEXT.get()
            token = _CURRENT_CONTEXT.set(previous)
            try:
                self.inherit_context(snapshot, component)
                return fn(*args, **kwargs)
            finally:
                _reset(token, previous)

        return wrapper

    # ------------------------------------------------------------------
    # Slot access
    # ------------------------------------------------------------------

    def current_context(self) -> CorrelationContext | None:
        return _CURRENT_CONTEXT.get()

    @contextmanager
    def with_context(self, context: CorrelationContext | Mapping[str, Any]) -> Iterator[CorrelationContext]:
        """Install ``context`` for the body of a ``with`` block.

        The previous context is restored on every exit path, including
        exceptions and task cancellation. A snapshot mapping is accepted and
        rebuilt without adding a hop.
        """
        resolved = context if isinstance(context, CorrelationContext) else CorrelationContext.from_snapshot(context)
        previous = _CURRENT_CONTEXT.get()
        token = _CURRENT_CONTEXT.set(resolved)
        try:
            yield resolved
        finally:
            _reset(token, previous)

    def clear_context(self) -> None:
        _CURRENT_CONTEXT.set(None)

    def _check_depth(self, context: CorrelationContext) -> None:
        if context.depth > self._max_depth:
            logger.warning(
                "Correlation chain exceeds maximum depth",
                depth=context.depth,
                max_depth=self._max_depth,
                chain=list(context.chain),
                primary_correlation_id=context.primary_correlation_id,
            )


def _reset(token: Any, previous: CorrelationContext | None) -> None:
    """Restore the slot, tolerating tokens from a different Context.

    ContextVar.reset() refuses tokens created in another Context (a
    generator resumed elsewhere). Falling back to set() still restores the
    value this unit observed before the scope began.
    """
    try:
        _CURRENT_CONTEXT.reset(token)
    except ValueError:
        _CURRENT_CONTEXT.set(previous)
