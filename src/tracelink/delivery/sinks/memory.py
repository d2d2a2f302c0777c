# src/tracelink/delivery/sinks/memory.py
"""In-process capture sink for debugging and tests.

Every transmission is recorded (decoded back into event dicts) instead of
leaving the process. Answers can be scripted to exercise retry, partial
success and circuit-breaker paths without a network.
"""

from __future__ import annotations

import gzip
import json
import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from tracelink.contracts.errors import SinkConfigurationError
from tracelink.contracts.results import SinkResponse

# A scripted answer: a status code, a full response, or an exception to raise.
ScriptedAnswer = int | SinkResponse | BaseException


@dataclass(frozen=True, slots=True)
class CapturedRequest:
    """One transmission as the collector would have seen it."""

    body: bytes
    headers: dict[str, str]
    timeout: float

    @property
    def events(self) -> list[dict[str, Any]]:
        raw = gzip.decompress(self.body) if self.headers.get("Content-Encoding") == "gzip" else self.body
        decoded: list[dict[str, Any]] = json.loads(raw)
        return decoded


class MemoryConnection:
    def __init__(self, sink: MemorySink) -> None:
        self._sink = sink
        self.closed = False

    def send(self, body: bytes, headers: Mapping[str, str], *, timeout: float) -> SinkResponse:
        return self._sink._record(CapturedRequest(body=body, headers=dict(headers), timeout=timeout))

    def close(self) -> None:
        self.closed = True


class MemorySink:
    """Capture batches in memory.

    Configuration options:
        status_code: Status returned when no scripted answer is queued
            (default: 200)

    Example:
        sink = MemorySink()
        sink.configure({})
        sink.script(503, 200)  # first attempt fails, retry succeeds
        ...
        assert sink.events[0]["event_type"] == "data.change"
    """

    _name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: list[CapturedRequest] = []
        self._script: deque[ScriptedAnswer] = deque()
        self._default_status = 200
        self._connections_opened = 0
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        status = config.get("status_code", 200)
        if type(status) is not int or not 100 <= status <= 599:
            raise SinkConfigurationError(self._name, f"status_code must be an HTTP status, got {status!r}")
        self._default_status = status

    def script(self, *answers: ScriptedAnswer) -> None:
        """Queue answers consumed in order by subsequent transmissions."""
        with self._lock:
            self._script.extend(answers)

    def open_connection(self) -> MemoryConnection:
        with self._lock:
            self._connections_opened += 1
        return MemoryConnection(self)

    @property
    def connections_opened(self) -> int:
        with self._lock:
            return self._connections_opened

    @property
    def requests(self) -> list[CapturedRequest]:
        with self._lock:
            return list(self._requests)

    @property
    def batches(self) -> list[list[dict[str, Any]]]:
        return [request.events for request in self.requests]

    @property
    def events(self) -> list[dict[str, Any]]:
        return [event for batch in self.batches for event in batch]

    def clear(self) -> None:
        with self._lock:
            self._requests.clear()
            self._script.clear()

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _record(self, request: CapturedRequest) -> SinkResponse:
        with self._lock:
            self._requests.append(request)
            answer: ScriptedAnswer = self._script.popleft() if self._script else self._default_status
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, SinkResponse):
            return answer
        return SinkResponse(status_code=answer)
