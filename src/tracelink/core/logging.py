# src/tracelink/core/logging.py
"""Structured logging configuration for tracelink.

Uses structlog for structured logging. This module configures BOTH structlog
and stdlib logging to emit consistent output (JSON or console), routing
stdlib records through structlog's processor chain via ProcessorFormatter.

Every record is enriched with the correlation context active in the
emitting execution unit, so agent logs can be joined to the events they
describe.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

from tracelink.correlation.manager import current_context

# Transport internals that emit connection details at DEBUG level.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "dynaconf",
)


def add_correlation_context(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Attach the active correlation ids to the log record.

    Explicitly passed correlation_id/primary_correlation_id keys win.
    """
    context = current_context()
    if context is not None:
        event_dict.setdefault("correlation_id", context.correlation_id)
        event_dict.setdefault("primary_correlation_id", context.primary_correlation_id)
    return event_dict


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Remove ProcessorFormatter bookkeeping fields from output.

    ProcessorFormatter always adds _record and _from_structlog.
    """
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog and stdlib logging for tracelink.

    Args:
        json_output: If True, output JSON. If False, human-readable.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_correlation_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Disable caching to allow reconfiguration in tests
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(log_level)

    # Never make noisy loggers less restrictive than the root level
    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
