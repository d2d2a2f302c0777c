"""Correlation context propagation.

Components:
- context: CorrelationContext immutable value and snapshot conversion
- manager: CorrelationManager and the execution-unit-local slot

Usage:
    from tracelink.correlation import CorrelationManager, current_context

    manager = CorrelationManager()
    manager.start_request_context("req_1", session_id="sess_1")
    child = manager.create_child_context("database", "update")
"""

from tracelink.correlation.context import CorrelationContext, new_correlation_id
from tracelink.correlation.manager import CorrelationManager, current_context

__all__ = [
    "CorrelationContext",
    "CorrelationManager",
    "current_context",
    "new_correlation_id",
]
