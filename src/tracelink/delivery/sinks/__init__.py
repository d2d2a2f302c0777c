"""Built-in delivery sinks.

Available sinks:
- HttpSink: POST batches to an HTTP(S) collector (production)
- MemorySink: Capture batches in-process (debugging and tests)

Plugin registration:
    Sinks are registered via the tracelink_get_sinks hook.
    The BuiltinSinksPlugin in this module registers all built-in sinks.
"""

from tracelink.delivery.hookspecs import hookimpl
from tracelink.delivery.sinks.http import HttpConnection, HttpSink
from tracelink.delivery.sinks.memory import CapturedRequest, MemoryConnection, MemorySink


class BuiltinSinksPlugin:
    """Plugin that registers built-in delivery sinks."""

    @hookimpl
    def tracelink_get_sinks(self) -> list[type]:
        """Return built-in sink classes."""
        return [HttpSink, MemorySink]


__all__ = [
    "BuiltinSinksPlugin",
    "CapturedRequest",
    "HttpConnection",
    "HttpSink",
    "MemoryConnection",
    "MemorySink",
]
