"""Event model: UniversalEvent and the platform identity it carries."""

from tracelink.events.platform import SCHEMA_VERSION, PlatformInfo, detect_platform
from tracelink.events.universal import EVENT_TYPE_PATTERN, UniversalEvent, new_event_id

__all__ = [
    "EVENT_TYPE_PATTERN",
    "SCHEMA_VERSION",
    "PlatformInfo",
    "UniversalEvent",
    "detect_platform",
    "new_event_id",
]
