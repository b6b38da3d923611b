"""Retry logic with exponential backoff for migration scripts."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from migrator.core.errors import DriverError, MigrationTimeoutError

MAX_BACKOFF_SECONDS = 16.0


def calculate_backoff(attempt: int, base_ms: int = 100) -> float:
    """Calculate exponential backoff delay in seconds.

    Args:
        attempt: Retry number (1 for the first retry)
        base_ms: Delay before the first retry, in milliseconds

    Returns:
        Delay in seconds (base, 2x base, 4x base...), capped at 16s
    """
    return min(base_ms * 2 ** max(attempt - 1, 0) / 1000, MAX_BACKOFF_SECONDS)


def should_retry(error: BaseException, attempt: int, max_retries: int) -> bool:
    """Check if a failed execution should be retried.

    Only transient driver errors and timeouts are retried.

    Args:
        error: Exception raised by the last attempt
        attempt: Number of retries already made
        max_retries: Maximum number of retries

    Returns:
        True if should retry, False otherwise
    """
    if attempt >= max_retries:
        return False
    if isinstance(error, MigrationTimeoutError):
        return True
    return isinstance(error, DriverError) and error.transient


class RetryHandler:
    """Runs a script execution with a per-attempt timeout and bounded retries."""

    def __init__(
        self,
        max_retries: int = 3,
        timeout_ms: int = 30000,
        backoff_ms: int = 100,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        """Initialize retry handler.

        Args:
            max_retries: Retries after the first attempt
            timeout_ms: Per-attempt timeout in milliseconds
            backoff_ms: Base backoff delay in milliseconds
            logger: Logger to use instead of the module logger
        """
        self.max_retries = max_retries
        self.timeout_ms = timeout_ms
        self.backoff_ms = backoff_ms
        self.logger = logger or logging.getLogger(__name__)
        self.attempts = 0

    async def run(
        self,
        callback: Callable[[], Awaitable[Any]],
        operation_name: str = "operation",
        version: str | None = None,
    ) -> Any:
        """Run an async operation under timeout, retrying transient failures.

        Args:
            callback: Async function to run
            operation_name: Name of the operation for logging
            version: Migration version the operation belongs to

        Returns:
            Result of the callback

        Raises:
            MigrationTimeoutError: If the final attempt timed out
            Exception: Last exception if all retries fail
        """
        self.attempts = 0
        retries = 0
        while True:
            self.attempts += 1
            try:
                return await asyncio.wait_for(callback(), timeout=self.timeout_ms / 1000)
            except TimeoutError as e:
                error: BaseException = MigrationTimeoutError(
                    f"{operation_name} timed out after {self.timeout_ms}ms",
                    version=version,
                    details={"timeout_ms": self.timeout_ms},
                )
                error.__cause__ = e
            except DriverError as e:
                if e.version is None:
                    e.version = version
                error = e

            if not should_retry(error, retries, self.max_retries):
                if retries:
                    self.logger.error(f"{operation_name} failed after {self.attempts} attempts: {error}")
                raise error

            retries += 1
            delay = calculate_backoff(retries, self.backoff_ms)
            self.logger.warning(
                f"{operation_name} failed (attempt {self.attempts}/{self.max_retries + 1}): {error}. "
                f"Retrying in {delay}s..."
            )
            await asyncio.sleep(delay)
