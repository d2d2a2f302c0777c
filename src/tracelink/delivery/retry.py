# src/tracelink/delivery/retry.py
"""RetryManager: bounded exponential-backoff retries with tenacity.

A delivery attempt can fail in two ways that both deserve another try:
- the transport raised (network error, timeout, pool exhaustion)
- the collector answered with a retryable status (e.g. 503)

Both are expressed as tenacity retry conditions. Delay before retry n
(n = 0 for the first retry) is ``initial_delay * exponential_base**n``,
capped at ``max_delay``. No jitter is applied.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from tracelink.core.config import DeliverySettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when every attempt failed with a retryable exception."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=4 means: try, retry, retry, retry.
    """

    max_attempts: int = 4
    initial_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "DeliverySettings") -> "RetryConfig":
        """Map delivery settings; retry_attempts counts retries, not tries."""
        return cls(
            max_attempts=settings.retry_attempts + 1,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            exponential_base=settings.retry_backoff,
        )

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (0-based)."""
        return min(self.initial_delay * self.exponential_base**retry_number, self.max_delay)


class RetryManager:
    """Runs an operation under a RetryConfig.

    Example:
        manager = RetryManager(RetryConfig.from_settings(settings.delivery))

        response = manager.execute_with_retry(
            lambda: conn.send(body, headers, timeout=30.0),
            is_retryable=lambda e: isinstance(e, TransportError) and e.retryable,
            should_retry_result=lambda r: r.status_code in (502, 503),
        )
    """

    def __init__(
        self,
        config: RetryConfig,
        *,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        """Initialize with config.

        Args:
            config: Retry configuration
            sleep: Called with each backoff delay; tests inject a recorder
        """
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        should_retry_result: Callable[[T], bool] | None = None,
        on_retry: Callable[[int, float], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Operation to execute
            is_retryable: Whether a raised exception deserves another attempt
            should_retry_result: Whether a returned value deserves another attempt
            on_retry: Called before each backoff with (failed_attempt, delay)

        Returns:
            Result of the last attempt. When retries run out on a retryable
            result, that result is returned rather than raised.

        Raises:
            MaxRetriesExceeded: If every attempt raised a retryable exception
            Exception: The first non-retryable exception, unchanged
        """
        retry_condition = retry_if_exception(is_retryable)
        if should_retry_result is not None:
            retry_condition = retry_condition | retry_if_result(should_retry_result)

        def before_sleep(retry_state: RetryCallState) -> None:
            if on_retry is not None and retry_state.next_action is not None:
                on_retry(retry_state.attempt_number, retry_state.next_action.sleep)

        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.initial_delay,
                exp_base=self._config.exponential_base,
                max=self._config.max_delay,
            ),
            retry=retry_condition,
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=False,  # RetryError is converted below
        )

        result: Any = None
        try:
            for attempt_state in retrying:
                with attempt_state:
                    result = operation()
                outcome = attempt_state.retry_state.outcome
                if outcome is not None and not outcome.failed:
                    attempt_state.retry_state.set_result(result)
        except RetryError as e:
            last = e.last_attempt
            if last.failed:
                error = last.exception()
                if error is None:
                    raise RuntimeError("Failed attempt carried no exception") from e
                raise MaxRetriesExceeded(self._config.max_attempts, error) from e
            return last.result()  # type: ignore[no-any-return]

        return result  # type: ignore[no-any-return]
