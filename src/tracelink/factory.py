# src/tracelink/factory.py
"""Factory functions wiring components from TracelinkSettings.

Nothing in tracelink reads configuration from a process-wide registry.
These functions are the single place where settings become objects:

1. Discovering sink classes via pluggy hooks
2. Instantiating and configuring the selected sink
3. Creating the processor, correlation manager, engine and writer

Usage:
    from tracelink.core.config import load_settings
    from tracelink.factory import build_writer

    settings = load_settings(Path("tracelink.yaml"))
    writer = build_writer(settings)
    writer.log(event)
    writer.close()
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from typing import Any

import pluggy
import structlog

from tracelink.contracts.errors import SinkConfigurationError
from tracelink.core.clock import Clock
from tracelink.core.config import TracelinkSettings
from tracelink.correlation.manager import CorrelationManager
from tracelink.delivery.engine import DeliveryEngine
from tracelink.delivery.hookspecs import PROJECT_NAME, TracelinkSinkSpec
from tracelink.delivery.protocols import SinkProtocol
from tracelink.delivery.sinks import BuiltinSinksPlugin
from tracelink.processing.processor import EventProcessor
from tracelink.writer import EventWriter

logger = structlog.get_logger(__name__)


def _resolve_sink_name(sink_class: type[SinkProtocol]) -> str:
    """Read the sink name from the class-level _name, or from an instance."""
    class_name_hint = sink_class.__dict__.get("_name")
    if class_name_hint is not None:
        if type(class_name_hint) is str and class_name_hint != "":
            return class_name_hint
        raise SinkConfigurationError(
            sink_class.__name__,
            f"Sink class attribute _name must be a non-empty string, got {class_name_hint!r}",
        )

    try:
        instance = sink_class()
    except Exception as e:
        raise SinkConfigurationError(
            sink_class.__name__,
            f"Failed to instantiate sink class during discovery: {e}",
        ) from e
    resolved = instance.name
    if type(resolved) is not str or resolved == "":
        raise SinkConfigurationError(
            sink_class.__name__,
            f"Sink name must be a non-empty string, got {resolved!r}",
        )
    return resolved


def discover_sinks(sink_plugins: Iterable[Any] = ()) -> dict[str, type[SinkProtocol]]:
    """Discover delivery sinks via pluggy hooks.

    Registers the built-in sinks plus any plugin objects provided by the
    caller, then calls ``tracelink_get_sinks`` hooks to build a name->class
    registry.

    Raises:
        SinkConfigurationError: If a plugin is invalid, a hook fails or two
            sinks share a name
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(TracelinkSinkSpec)

    for plugin in (BuiltinSinksPlugin(), *sink_plugins):
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            # PluginValidationError: hook spec mismatch
            # ValueError: plugin object or name already registered
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise SinkConfigurationError(
                "sink_plugins",
                f"Invalid sink plugin {type(plugin).__name__}: {e}",
            ) from e

    registry: dict[str, type[SinkProtocol]] = {}
    for hook_impl in plugin_manager.hook.tracelink_get_sinks.get_hookimpls():
        plugin_name = type(hook_impl.plugin).__name__
        try:
            sink_classes = hook_impl.plugin.tracelink_get_sinks()
        except Exception as e:
            raise SinkConfigurationError(
                "sink_plugins",
                f"Sink plugin {plugin_name} failed in tracelink_get_sinks: {e}",
            ) from e

        if sink_classes is None or type(sink_classes) in (str, bytes):
            raise SinkConfigurationError(
                "sink_plugins",
                f"tracelink_get_sinks in plugin {plugin_name} returned {type(sink_classes).__name__}; "
                "expected iterable of sink classes",
            )

        for sink_class in sink_classes:
            sink_name = _resolve_sink_name(sink_class)
            if sink_name in registry:
                raise SinkConfigurationError(
                    sink_name,
                    f"Duplicate sink name '{sink_name}' discovered: {registry[sink_name].__name__} and {sink_class.__name__}",
                )
            registry[sink_name] = sink_class

    return registry


def create_sink(settings: TracelinkSettings, *, sink_plugins: Iterable[Any] = ()) -> SinkProtocol | None:
    """Instantiate and configure the sink named by ``delivery.sink``.

    Returns None when the http sink is selected but no endpoint is
    configured; the engine then reports NO_ENDPOINT for every delivery.

    Raises:
        SinkConfigurationError: If the sink is unknown or rejects its config
    """
    delivery = settings.delivery
    registry = discover_sinks(sink_plugins)

    try:
        sink_class = registry[delivery.sink]
    except KeyError:
        raise SinkConfigurationError(
            delivery.sink,
            f"Unknown sink. Available sinks: {sorted(registry)}",
        ) from None

    options: dict[str, Any] = {"timeout": delivery.timeout, **delivery.sink_options}
    if delivery.endpoint is not None:
        options.setdefault("endpoint", delivery.endpoint)

    if delivery.sink == "http" and "endpoint" not in options:
        logger.warning(
            "No delivery endpoint configured",
            hint="Set delivery.endpoint (TRACELINK_DELIVERY__ENDPOINT) to ship events",
        )
        return None

    sink = sink_class()
    sink.configure(options)
    logger.debug("Sink configured", sink=delivery.sink, options_keys=sorted(options))
    return sink


def create_event_processor(settings: TracelinkSettings) -> EventProcessor:
    return EventProcessor.from_settings(settings)


def create_correlation_manager(settings: TracelinkSettings) -> CorrelationManager:
    return CorrelationManager.from_settings(settings.correlation)


def create_delivery_engine(
    settings: TracelinkSettings,
    *,
    sink_plugins: Iterable[Any] = (),
    clock: Clock | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> DeliveryEngine:
    """Create a DeliveryEngine with the configured sink.

    Raises:
        SinkConfigurationError: If sink discovery or configuration fails
    """
    sink = create_sink(settings, sink_plugins=sink_plugins)
    return DeliveryEngine.from_settings(settings, sink, clock=clock, sleep=sleep)


def build_writer(
    settings: TracelinkSettings | None = None,
    *,
    sink_plugins: Iterable[Any] = (),
) -> EventWriter:
    """Wire processor and engine into an EventWriter."""
    settings = settings if settings is not None else TracelinkSettings()
    processor = create_event_processor(settings)
    engine = create_delivery_engine(settings, sink_plugins=sink_plugins)
    return EventWriter(processor, engine)
