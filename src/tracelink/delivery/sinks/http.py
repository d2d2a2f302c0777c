# src/tracelink/delivery/sinks/http.py
"""HTTP sink: POST batch bodies to a collector with httpx.

Each pooled connection owns one httpx.Client limited to a single socket,
so ``max_delivery_connections`` bounds concurrent sockets end to end.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from tracelink.contracts.errors import SinkConfigurationError, TransportError
from tracelink.contracts.results import SinkResponse

logger = structlog.get_logger(__name__)


class HttpConnection:
    """One keep-alive connection to the collector."""

    def __init__(
        self,
        endpoint: str,
        *,
        verify: bool = True,
        timeout: float = 30.0,
        on_close: Callable[[HttpConnection], None] | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._on_close = on_close
        self._client = httpx.Client(
            timeout=timeout,
            verify=verify,
            limits=httpx.Limits(max_connections=1, max_keepalive_connections=1),
        )
        self._closed = False

    def send(self, body: bytes, headers: Mapping[str, str], *, timeout: float) -> SinkResponse:
        """POST ``body``; raises TransportError only when no response arrived."""
        try:
            response = self._client.post(
                self._endpoint,
                content=body,
                headers=dict(headers),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out after {timeout}s: {e}", retryable=True) from e
        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransportError(f"Network error: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP client error: {e}", retryable=False) from e
        return SinkResponse(status_code=response.status_code, body=response.text)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._client.close()
            if self._on_close is not None:
                self._on_close(self)


class HttpSink:
    """Deliver batches to an HTTP(S) collector.

    Configuration options:
        endpoint (required): Collector URL, http or https
        verify: Verify TLS certificates (default: true)
        timeout: Default per-request timeout in seconds (default: 30)

    Example configuration:
        delivery:
          sink: http
          endpoint: https://collector.example.com/v1/events
          sink_options:
            verify: false
    """

    _name = "http"

    def __init__(self) -> None:
        """Initialize unconfigured sink."""
        self._endpoint: str | None = None
        self._verify = True
        self._timeout = 30.0
        # Open connections only; each one deregisters itself on close
        self._connections: set[HttpConnection] = set()
        self._connections_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    def configure(self, config: dict[str, Any]) -> None:
        endpoint = config.get("endpoint")
        if not endpoint:
            raise SinkConfigurationError(self._name, "HTTP sink requires 'endpoint' in config")
        parsed = urlparse(str(endpoint))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise SinkConfigurationError(self._name, f"endpoint must be an http(s) URL, got {endpoint!r}")

        timeout = config.get("timeout", 30.0)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise SinkConfigurationError(self._name, f"timeout must be a positive number, got {timeout!r}")

        self._endpoint = str(endpoint)
        self._verify = bool(config.get("verify", True))
        self._timeout = float(timeout)

        logger.debug(
            "HTTP sink configured",
            endpoint=self._endpoint,
            verify=self._verify,
        )

    def open_connection(self) -> HttpConnection:
        if self._endpoint is None:
            raise SinkConfigurationError(self._name, "open_connection() called before configure()")
        conn = HttpConnection(
            self._endpoint,
            verify=self._verify,
            timeout=self._timeout,
            on_close=self._forget,
        )
        with self._connections_lock:
            self._connections.add(conn)
        return conn

    @property
    def open_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    def _forget(self, conn: HttpConnection) -> None:
        with self._connections_lock:
            self._connections.discard(conn)

    def close(self) -> None:
        with self._connections_lock:
            connections = list(self._connections)
        for conn in connections:
            conn.close()
