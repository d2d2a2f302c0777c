"""Exception taxonomy for tracelink.

Propagation policy:
- NoActiveContextError / EventValidationError: programmer errors, raised
  synchronously to the adapter that misused the API.
- PayloadTooLargeError: expected operational condition. Adapters MUST catch
  it and drop the event; it must never reach the host application.
- Delivery failures are NOT exceptions. DeliveryEngine returns a
  DeliveryResult with success=False instead. TransportError is internal to
  the delivery package and never escapes DeliveryEngine.deliver().
"""


class TracelinkError(Exception):
    """Base class for all tracelink exceptions."""


class NoActiveContextError(TracelinkError):
    """Raised when deriving a child context with no active root context."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: no correlation context is active in this execution unit. "
            "Call start_request_context(), start_flow_context() or inherit_context() first."
        )


class EventValidationError(TracelinkError):
    """Raised when a UniversalEvent fails schema validation.

    Attributes:
        errors: Every validation failure found, in check order
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Event validation failed: {', '.join(self.errors)}")


class PayloadTooLargeError(TracelinkError):
    """Raised when a processed event exceeds the configured size limit.

    Attributes:
        size: Measured serialized size in bytes
        limit: Configured maximum in bytes
    """

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Event payload ({size} bytes) exceeds maximum size ({limit} bytes)")


class ConfigurationError(TracelinkError):
    """Raised when settings cannot be loaded or are internally inconsistent."""


class SinkConfigurationError(TracelinkError):
    """Raised when a delivery sink cannot be discovered or configured.

    Raised during setup only. Sinks never raise this from send().

    Attributes:
        sink_name: Name of the sink that failed
        message: Human-readable error description
    """

    def __init__(self, sink_name: str, message: str) -> None:
        self.sink_name = sink_name
        self.message = message
        super().__init__(f"Sink '{sink_name}' failed: {message}")


class TransportError(TracelinkError):
    """Raised by a sink connection when a transmission could not complete.

    Covers network errors, timeouts and pool exhaustion. Caught inside
    DeliveryEngine and converted to a DeliveryResult.

    Attributes:
        retryable: Whether another attempt may succeed
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)
