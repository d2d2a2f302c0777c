# tests/conftest.py
"""Shared test fixtures and helpers.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/

Correlation isolation:
    Every test starts and ends with an empty correlation slot, so a context
    started in one test can never leak into the next.
"""

import os
from collections.abc import Iterator
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from tracelink.core.clock import MockClock
from tracelink.correlation.manager import CorrelationManager
from tracelink.delivery.engine import DeliveryEngine
from tracelink.delivery.retry import RetryConfig
from tracelink.delivery.sinks.memory import MemorySink
from tracelink.events.platform import PlatformInfo
from tracelink.events.universal import UniversalEvent

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Correlation fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _isolated_correlation_slot() -> Iterator[None]:
    """Clear the execution-unit context before and after each test."""
    CorrelationManager().clear_context()
    yield
    CorrelationManager().clear_context()


@pytest.fixture
def manager() -> CorrelationManager:
    return CorrelationManager(origin_component="web")


# =============================================================================
# Event fixtures
# =============================================================================

TEST_PLATFORM = PlatformInfo(service="checkout", environment="test", hostname="test-host")


def _make_event(**overrides: Any) -> UniversalEvent:
    """Build a valid UniversalEvent; keyword overrides replace any field."""
    fields: dict[str, Any] = {
        "event_type": "data.change",
        "action": "order.updated",
        "actor": {"type": "user", "id": "42"},
        "subject": {"type": "order", "id": "1001"},
        "metadata": {"status": "paid"},
        "platform": TEST_PLATFORM,
    }
    fields.update(overrides)
    return UniversalEvent(**fields)


@pytest.fixture
def make_event() -> Any:
    return _make_event


@pytest.fixture
def event() -> UniversalEvent:
    return _make_event()


# =============================================================================
# Delivery fixtures
# =============================================================================


@pytest.fixture
def memory_sink() -> MemorySink:
    sink = MemorySink()
    sink.configure({})
    return sink


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock(start=1000.0)


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays recorded instead of slept."""
    return []


@pytest.fixture
def engine(memory_sink: MemorySink, mock_clock: MockClock, sleeps: list[float]) -> Iterator[DeliveryEngine]:
    """DeliveryEngine on a memory sink with instant, recorded backoff."""
    delivery_engine = DeliveryEngine(
        memory_sink,
        service="checkout",
        environment="test",
        retry_config=RetryConfig(max_attempts=4, initial_delay=0.5, max_delay=30.0, exponential_base=2.0),
        circuit_breaker_threshold=3,
        circuit_breaker_timeout=60.0,
        compression_threshold=1024,
        batch_size=10,
        flush_interval=0.2,
        buffer_size=50,
        clock=mock_clock,
        sleep=sleeps.append,
    )
    yield delivery_engine
    delivery_engine.shutdown()

