# tests/property/test_processing_properties.py
"""Property-based tests for EventProcessor.

Invariants:
- sensitive field values never survive processing, at any depth
- embedded email addresses never survive pattern redaction
- a returned payload never exceeds the configured size limit
- deterministic sampling is a pure function of the event_id
- envelope identifiers pass through unchanged
"""

import json
from typing import Any

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tracelink.contracts.enums import SamplingMode
from tracelink.contracts.errors import PayloadTooLargeError
from tracelink.correlation.context import CorrelationContext
from tracelink.events.platform import PlatformInfo
from tracelink.events.universal import UniversalEvent
from tracelink.processing.processor import EventProcessor, serialized_size
from tracelink.processing.redaction import DEFAULT_SENSITIVE_FIELDS

PLATFORM = PlatformInfo(service="checkout", environment="test", hostname="test-host")

safe_keys = st.sampled_from(["status", "name", "amount", "items", "note", "region"])
safe_leaves = st.one_of(st.integers(), st.booleans(), st.text(alphabet="abcxyz ", max_size=20))
payload_trees = st.recursive(
    safe_leaves,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(safe_keys, children, max_size=4),
    ),
    max_leaves=20,
)


def _event(metadata: dict[str, Any], **overrides: Any) -> UniversalEvent:
    fields: dict[str, Any] = {
        "event_type": "data.change",
        "action": "order.updated",
        "actor": {"type": "user", "id": "42"},
        "metadata": metadata,
        "platform": PLATFORM,
        "correlation": CorrelationContext.root("web"),
    }
    fields.update(overrides)
    return UniversalEvent(**fields)


def _nest(path: list[str], leaf: Any) -> Any:
    node = leaf
    for key in reversed(path):
        node = {key: node}
    return node


class TestRedactionProperties:
    @given(
        path=st.lists(safe_keys, max_size=5),
        field=st.sampled_from(DEFAULT_SENSITIVE_FIELDS),
        secret=st.text(alphabet="QWERTY", min_size=6, max_size=20),
        siblings=st.dictionaries(safe_keys, payload_trees, max_size=3),
    )
    def test_sensitive_values_never_survive(self, path: list[str], field: str, secret: str, siblings: dict[str, Any]) -> None:
        metadata = {**siblings, "wrapped": _nest(path, {field.upper(): secret})}
        payload = EventProcessor(auto_detect_pii=False).process(_event(metadata))

        assert payload is not None
        assert secret not in json.dumps(payload["metadata"])

    @given(
        local=st.from_regex(r"[a-z]{1,10}", fullmatch=True),
        prefix=st.text(alphabet="abc ,;", max_size=15),
        suffix=st.text(alphabet="abc ,;", max_size=15),
    )
    def test_emails_never_survive(self, local: str, prefix: str, suffix: str) -> None:
        message = f"{prefix} {local}@example.com {suffix}"
        payload = EventProcessor().process(_event({"message": message}))

        assert payload is not None
        assert "@example.com" not in payload["metadata"]["message"]
        assert payload["metadata"]["message"].startswith(prefix)

    @given(tree=st.dictionaries(safe_keys, payload_trees, max_size=5))
    def test_clean_payloads_unchanged(self, tree: dict[str, Any]) -> None:
        payload = EventProcessor().process(_event(tree))

        assert payload is not None
        assert payload["metadata"] == tree
        assert payload["processing"]["sanitized_fields"] == []


class TestSizeProperties:
    @given(
        tree=st.dictionaries(safe_keys, payload_trees, max_size=5),
        limit=st.integers(min_value=200, max_value=4000),
    )
    def test_returned_payload_within_limit(self, tree: dict[str, Any], limit: int) -> None:
        processor = EventProcessor(max_payload_size=limit)
        try:
            payload = processor.process(_event(tree))
        except PayloadTooLargeError as e:
            assert e.size > limit
            return

        assert payload is not None
        del payload["processing"]
        assert serialized_size(payload) <= limit


class TestSamplingProperties:
    @given(rate=st.floats(min_value=0.0, max_value=1.0))
    def test_deterministic_decision_is_stable(self, rate: float) -> None:
        processor = EventProcessor(sample_rate=rate, sampling_mode=SamplingMode.DETERMINISTIC)
        ev = _event({})
        first = processor.process(ev) is None
        assert all((processor.process(ev) is None) == first for _ in range(3))

    @given(low=st.floats(min_value=0.0, max_value=1.0), high=st.floats(min_value=0.0, max_value=1.0))
    def test_kept_at_lower_rate_implies_kept_at_higher(self, low: float, high: float) -> None:
        if low > high:
            low, high = high, low
        ev = _event({})
        kept_low = EventProcessor(sample_rate=low, sampling_mode=SamplingMode.DETERMINISTIC).process(ev) is not None
        kept_high = EventProcessor(sample_rate=high, sampling_mode=SamplingMode.DETERMINISTIC).process(ev) is not None
        if kept_low:
            assert kept_high


class TestEnvelopeProperties:
    @given(tree=st.dictionaries(safe_keys, payload_trees, max_size=3))
    def test_identifiers_preserved(self, tree: dict[str, Any]) -> None:
        ev = _event(tree)
        payload = EventProcessor().process(ev)

        assert payload is not None
        assert payload["event_id"] == ev.event_id
        assert payload["correlation"]["correlation_id"] == ev.correlation_id
        assert payload["correlation"]["primary_correlation_id"] == ev.primary_correlation_id


@pytest.mark.parametrize("field", DEFAULT_SENSITIVE_FIELDS)
def test_every_default_field_redacted(field: str) -> None:
    payload = EventProcessor(auto_detect_pii=False).process(_event({field: "value-xyz"}))
    assert payload is not None
    assert payload["metadata"][field] == "[REDACTED]"
