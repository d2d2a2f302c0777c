# src/tracelink/core/config.py
"""
Configuration schema and loading for tracelink.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction. Components never read
settings from a process-wide registry; they receive them explicitly (see
tracelink.factory).
"""

import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tracelink.contracts.enums import SamplingMode
from tracelink.contracts.errors import ConfigurationError

# Upper bounds carried over from the agent's historical validation rules.
_MAX_EVENT_SIZE_CEILING = 10 * 1024 * 1024
_DEFAULT_RETRYABLE_STATUSES = (408, 429, 500, 502, 503, 504)


def _detect_service_name() -> str:
    explicit = os.environ.get("TRACELINK_SERVICE_NAME")
    if explicit:
        return explicit
    cwd_name = Path.cwd().name
    return cwd_name or "unknown-service"


def _detect_environment() -> str:
    for var in ("TRACELINK_ENVIRONMENT", "APP_ENV", "ENVIRONMENT"):
        value = os.environ.get(var)
        if value:
            return value
    return "development"


class PlatformSettings(BaseModel):
    """Identity of the emitting process, stamped on every event."""

    model_config = {"frozen": True}

    service_name: str = Field(default_factory=_detect_service_name, min_length=1)
    environment: str = Field(default_factory=_detect_environment, min_length=1)


class SecuritySettings(BaseModel):
    """PII protection and payload size limits.

    Example YAML:
        security:
          auto_detect_pii: true
          sensitive_fields: [national_id, iban]
          custom_pii_patterns:
            order_ref: "ORD-\\d{8}"
          max_event_size: 65536
    """

    model_config = {"frozen": True}

    auto_detect_pii: bool = Field(default=True, description="Enable pattern-based PII detection")
    sensitive_fields: tuple[str, ...] = Field(
        default=(),
        description="Field names redacted in addition to the built-in list",
    )
    custom_pii_patterns: dict[str, str] = Field(
        default_factory=dict,
        description="Named regular expressions scanned in addition to the built-in PII patterns",
    )
    max_event_size: int = Field(
        default=64 * 1024,
        gt=0,
        le=_MAX_EVENT_SIZE_CEILING,
        description="Maximum serialized event size in bytes",
    )
    redaction_marker: str = Field(default="[REDACTED]", min_length=1)

    @field_validator("custom_pii_patterns")
    @classmethod
    def validate_patterns_compile(cls, v: dict[str, str]) -> dict[str, str]:
        for name, pattern in v.items():
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"custom_pii_patterns['{name}'] is not a valid regular expression: {e}") from e
        return v


class PerformanceSettings(BaseModel):
    """Sampling, buffering and transport sizing."""

    model_config = {"frozen": True}

    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    sampling_mode: SamplingMode = Field(default=SamplingMode.PROBABILISTIC)
    event_buffer_size: int = Field(default=1000, gt=0, description="Events held awaiting batching")
    max_delivery_connections: int = Field(default=10, gt=0)
    compression_enabled: bool = Field(default=True)
    compression_threshold: int = Field(
        default=1024,
        ge=0,
        description="Batches larger than this many bytes are gzip-compressed",
    )


class DeliverySettings(BaseModel):
    """Collector endpoint, retry policy, batching and circuit breaking.

    Example YAML:
        delivery:
          endpoint: https://collector.example.com/v1/events
          timeout: 10
          retry_attempts: 3
          retry_backoff: 2.0
          batch_size: 100
          flush_interval: 5.0
          circuit_breaker_threshold: 5
          circuit_breaker_timeout: 60
    """

    model_config = {"frozen": True}

    endpoint: str | None = Field(default=None, description="Collector URL (http or https)")
    sink: str = Field(default="http", description="Registered sink name ('http' or 'memory')")
    sink_options: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, gt=0, le=60, description="Per-attempt timeout in seconds")
    retry_attempts: int = Field(default=3, ge=0, le=10, description="Retries after the first attempt")
    retry_backoff: float = Field(default=2.0, ge=1.0, description="Exponential backoff multiplier")
    retry_initial_delay: float = Field(default=0.5, ge=0.0, description="Delay before the first retry")
    retry_max_delay: float = Field(default=30.0, gt=0, description="Backoff ceiling in seconds")
    retryable_statuses: tuple[int, ...] = Field(default=_DEFAULT_RETRYABLE_STATUSES)
    batch_size: int = Field(default=100, gt=0)
    flush_interval: float = Field(default=5.0, gt=0)
    circuit_breaker_threshold: int = Field(default=5, gt=0)
    circuit_breaker_timeout: float = Field(default=60.0, gt=0)
    half_open_max_calls: int = Field(default=1, gt=0, description="Concurrent probes allowed while half-open")
    pool_acquire_timeout: float = Field(default=5.0, gt=0)

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint_scheme(cls, v: str | None) -> str | None:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"endpoint must be a valid http(s) URL, got {v!r}")
        return v

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "DeliverySettings":
        if self.retry_initial_delay > self.retry_max_delay:
            raise ValueError("retry_initial_delay cannot exceed retry_max_delay")
        return self


class CorrelationSettings(BaseModel):
    """Correlation context defaults."""

    model_config = {"frozen": True}

    origin_component: str = Field(default="web", min_length=1, description="Chain entry for root contexts")
    max_correlation_depth: int = Field(default=10, gt=0, le=50)


class TracelinkSettings(BaseModel):
    """Top-level tracelink configuration.

    All sections have working defaults; a bare ``TracelinkSettings()`` gives a
    processor-only setup with no collector endpoint.
    """

    model_config = {"frozen": True}

    platform: PlatformSettings = Field(default_factory=PlatformSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    correlation: CorrelationSettings = Field(default_factory=CorrelationSettings)


_SECTION_NAMES = frozenset(TracelinkSettings.model_fields)


def _normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Lowercase section and field names; leave deeper keys untouched.

    Dynaconf uppercases keys loaded from the environment. Header names and
    pattern names below the field level keep their original spelling.
    """
    result: dict[str, Any] = {}
    for section, values in raw.items():
        section_key = section.lower()
        if section_key not in _SECTION_NAMES:
            continue
        if isinstance(values, dict):
            result[section_key] = {k.lower(): v for k, v in values.items()}
        else:
            result[section_key] = values
    return result


def load_settings(config_path: Path | None = None) -> TracelinkSettings:
    """Load settings from an optional YAML file with environment overrides.

    Precedence:
    1. Environment variables (TRACELINK_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: TRACELINK_DELIVERY__ENDPOINT for nested keys.

    Raises:
        FileNotFoundError: If config_path is given and does not exist
        ConfigurationError: If the merged configuration fails validation;
            the pydantic ValidationError is chained as __cause__
    """
    from dynaconf import Dynaconf

    settings_files: list[str] = []
    if config_path is not None:
        # Dynaconf silently accepts missing files
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        settings_files.append(str(config_path))

    dynaconf_settings = Dynaconf(
        envvar_prefix="TRACELINK",
        settings_files=settings_files,
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    try:
        return TracelinkSettings(**_normalize_keys(dynaconf_settings.as_dict()))
    except ValidationError as e:
        source = str(config_path) if config_path is not None else "environment"
        raise ConfigurationError(f"Invalid tracelink configuration from {source}: {e}") from e
