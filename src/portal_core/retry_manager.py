"""
Retry Manager for upstream HTTP calls.

Retries transient upstream failures (HTTP 429 and 503 by default) with
exponential backoff, fails immediately on any other error, and re-raises the
last error once the attempt budget is spent. The budget is a fixed attempt
count, not a wall-clock deadline.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from .audit_logger import AuditLogger
from .config import RetryConfig
from .enums import LogLevel
from .exceptions import UpstreamError

T = TypeVar("T")


class RetryManager:
    """
    Manages retry logic with exponential backoff.

    Delays double from ``base_delay_seconds`` (1s, 2s, 4s, ...) and are
    capped at ``max_delay_seconds``.
    """

    def __init__(
        self,
        config: RetryConfig,
        sleep_func: Optional[Callable[[float], Awaitable[None]]] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Attempt budget, delays and retryable status codes
            sleep_func: Coroutine used to wait between attempts
            logger: Optional audit logger
        """
        self._config = config
        self._sleep = sleep_func or asyncio.sleep
        self._logger = logger

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay to wait after the given failed attempt (1-indexed).

        delay(n) = base_delay * 2^(n-1), capped at max_delay.
        """
        delay = self._config.base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self._config.max_delay_seconds)

    def is_retryable(self, error: BaseException) -> bool:
        """Only upstream errors with a transient status are retried."""
        return (
            isinstance(error, UpstreamError)
            and error.status_code in self._config.retryable_status_codes
        )

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """
        Execute an operation with retry logic and exponential backoff.

        Args:
            operation: The async operation to execute
            is_retryable: Optional override deciding which errors to retry

        Returns:
            The operation's result from the first successful attempt

        Raises:
            Exception: The non-retryable error, or the last error once all
                attempts have failed
        """
        check = is_retryable or self.is_retryable
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if not check(e) or attempt >= self._config.max_attempts:
                    if self._logger and attempt > 1:
                        self._logger.log_error(
                            "retry_manager",
                            f"Giving up after {attempt} attempt(s)",
                            error=e,
                        )
                    raise

                delay = self.calculate_delay(attempt)
                if self._logger:
                    self._logger.log(
                        LogLevel.WARN,
                        "retry_manager",
                        f"Attempt {attempt} failed, retrying in {delay:.1f}s",
                        {"attempt": attempt, "delay_seconds": delay, "error": str(e)},
                    )
                await self._sleep(delay)
