# src/tracelink/delivery/hookspecs.py
"""pluggy hook specifications for delivery sinks.

Sinks implement these hooks to register themselves. The delivery factory
calls them to discover which sink names are available.

Usage (implementing a sink plugin):
    from tracelink.delivery.hookspecs import hookimpl

    class MySinkPlugin:
        @hookimpl
        def tracelink_get_sinks(self):
            return [MySink]
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from tracelink.delivery.protocols import SinkProtocol

PROJECT_NAME = "tracelink"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)

hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class TracelinkSinkSpec:
    """Hook specifications for delivery sink plugins."""

    @hookspec
    def tracelink_get_sinks(self) -> list[type["SinkProtocol"]]:  # type: ignore[empty-body]
        """Return delivery sink classes.

        Returns:
            List of sink classes (not instances) that implement SinkProtocol
        """
