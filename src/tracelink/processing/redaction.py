# src/tracelink/processing/redaction.py
"""Field-name and pattern-based redaction of event payloads.

Both redactors walk a plain-data payload (dicts, lists, scalars) in place
and return the dotted paths they touched. Sequence items are addressed as
``path[i]``. The payload must be a private copy: EventProcessor always
hands over the fresh dict produced by UniversalEvent.to_dict().

FieldRedactor matches on key names and replaces the whole value.
PatternRedactor matches string values and replaces only the matched
substrings, so "Contact user@example.com for help" keeps its surrounding
text.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTION_MARKER = "[REDACTED]"

DEFAULT_SENSITIVE_FIELDS: tuple[str, ...] = (
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "api_key",
    "access_key",
    "credit_card",
    "cc_number",
    "card_number",
    "ssn",
    "social_security",
    "auth_token",
    "session_id",
    "cookie",
)

# Order matters: longer digit runs are tried first so a card number is not
# half-consumed by the phone pattern.
DEFAULT_PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "credit_card": re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
    "ssn": re.compile(r"\b\d{3}([-.\s]?)\d{2}\1\d{4}\b"),
    "phone": re.compile(r"(?:\+\d{1,3}[-.\s]?)?(?:\(\d{3}\)\s?|\b\d{3}[-.\s]?)\d{3}[-.\s]?\d{4}\b"),
    "email": re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_field_name(name: object) -> str:
    """Lowercase and strip separators: "API-Key", "api_key" and "apiKey" agree."""
    return _NON_ALNUM.sub("", str(name).lower())


def _join(path: str, key: object) -> str:
    return f"{path}.{key}" if path else str(key)


class FieldRedactor:
    """Replace values whose key contains a sensitive field name.

    Matching is a substring test on normalized names, so "user_password"
    and "X-Auth-Token" are both caught.
    """

    def __init__(
        self,
        extra_fields: Iterable[str] = (),
        *,
        marker: str = REDACTION_MARKER,
    ) -> None:
        names = [normalize_field_name(n) for n in (*DEFAULT_SENSITIVE_FIELDS, *extra_fields)]
        # dict.fromkeys keeps first-seen order while dropping duplicates
        self._names: tuple[str, ...] = tuple(dict.fromkeys(n for n in names if n))
        self._marker = marker

    @property
    def field_names(self) -> tuple[str, ...]:
        return self._names

    def is_sensitive(self, key: object) -> bool:
        normalized = normalize_field_name(key)
        return any(name in normalized for name in self._names)

    def redact(self, data: Any, path: str = "") -> list[str]:
        """Redact ``data`` in place, returning the paths replaced."""
        touched: list[str] = []
        self._walk(data, path, touched)
        return touched

    def _walk(self, data: Any, path: str, touched: list[str]) -> None:
        if isinstance(data, dict):
            for key, value in data.items():
                child = _join(path, key)
                if self.is_sensitive(key):
                    data[key] = self._marker
                    touched.append(child)
                else:
                    self._walk(value, child, touched)
        elif isinstance(data, list):
            for index, item in enumerate(data):
                self._walk(item, f"{path}[{index}]", touched)


class PatternRedactor:
    """Replace PII-looking substrings inside string values."""

    def __init__(
        self,
        custom_patterns: Mapping[str, str | re.Pattern[str]] | None = None,
        *,
        marker: str = REDACTION_MARKER,
    ) -> None:
        patterns = dict(DEFAULT_PII_PATTERNS)
        for name, pattern in (custom_patterns or {}).items():
            patterns[name] = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._patterns = patterns
        self._marker = marker

    @property
    def pattern_names(self) -> tuple[str, ...]:
        return tuple(self._patterns)

    def scrub_text(self, text: str) -> str:
        """Return ``text`` with every pattern match replaced by the marker."""
        for pattern in self._patterns.values():
            text = pattern.sub(self._marker, text)
        return text

    def redact(self, data: Any, path: str = "") -> list[str]:
        """Scrub string values of ``data`` in place, returning the paths changed."""
        touched: list[str] = []
        self._walk(data, path, touched)
        return touched

    def _walk(self, data: Any, path: str, touched: list[str]) -> None:
        if isinstance(data, dict):
            for key, value in data.items():
                child = _join(path, key)
                if isinstance(value, str):
                    scrubbed = self.scrub_text(value)
                    if scrubbed != value:
                        data[key] = scrubbed
                        touched.append(child)
                else:
                    self._walk(value, child, touched)
        elif isinstance(data, list):
            for index, item in enumerate(data):
                child = f"{path}[{index}]"
                if isinstance(item, str):
                    scrubbed = self.scrub_text(item)
                    if scrubbed != item:
                        data[index] = scrubbed
                        touched.append(child)
                else:
                    self._walk(item, child, touched)
