# src/tracelink/events/platform.py
"""Platform identity stamped on every UniversalEvent."""

from __future__ import annotations

import functools
import platform as _stdlib_platform
import socket
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from tracelink import __version__

if TYPE_CHECKING:
    from tracelink.core.config import PlatformSettings

# Version of the event envelope layout produced by UniversalEvent.to_dict().
SCHEMA_VERSION = "1.0"


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """Who emitted an event: service, environment and agent build."""

    service: str
    environment: str
    agent_version: str = __version__
    schema_version: str = SCHEMA_VERSION
    python_version: str = _stdlib_platform.python_version()
    hostname: str | None = None

    @classmethod
    def from_settings(cls, settings: PlatformSettings) -> PlatformInfo:
        return cls(
            service=settings.service_name,
            environment=settings.environment,
            hostname=_hostname(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _hostname() -> str | None:
    try:
        return socket.gethostname()
    except OSError:
        return None


@functools.cache
def detect_platform() -> PlatformInfo:
    """Platform info from environment defaults, computed once per process.

    Used when an event is built without an explicit platform. Applications
    that configure tracelink through settings should pass
    PlatformInfo.from_settings() instead.
    """
    from tracelink.core.config import PlatformSettings

    return PlatformInfo.from_settings(PlatformSettings())
