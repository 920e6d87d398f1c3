"""Retry utilities for optimistic-lock conflicts and external dependencies.

Money-moving rail calls are never wrapped in a retry: the caller decides,
re-using the same idempotent reference.
"""

import asyncio
import logging
import random
import time
from functools import wraps
from typing import Any, Awaitable, Callable, List, Type, TypeVar, Union

from otc_desk.utils.exceptions import ConcurrentModificationError, OTCDeskError

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


class CircuitOpenError(OTCDeskError):
    """Raised while a circuit breaker refuses calls."""

    retryable = True


class CircuitBreaker:
    """Circuit breaker pattern implementation."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: int = 60,
        expected_exceptions: tuple = (Exception,)
    ) -> None:
        """Initialize circuit breaker.

        Args:
            name: Name used in logs and errors
            failure_threshold: Number of failures before opening circuit
            reset_timeout: Time in seconds to wait before attempting reset
            expected_exceptions: Exceptions that count as failures
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.expected_exceptions = expected_exceptions

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Invoke ``func`` through the breaker."""
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
                logger.info("Circuit breaker %s entering HALF_OPEN state", self.name)
            else:
                raise CircuitOpenError(
                    f"Circuit breaker {self.name} is OPEN",
                    context={"breaker": self.name},
                )

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions:
            self.record_failure()
            raise

        if self.state == "HALF_OPEN":
            self.reset()
        return result

    def record_failure(self) -> None:
        """Record a failure."""
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.failure_count >= self.failure_threshold:
            self.state = "OPEN"
            logger.warning(
                "Circuit breaker %s opened after %d failures",
                self.name,
                self.failure_count
            )

    def reset(self) -> None:
        """Reset circuit breaker."""
        self.failure_count = 0
        self.state = "CLOSED"
        logger.info("Circuit breaker %s reset to CLOSED state", self.name)


def retry_async(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 60.0,
    exceptions: Union[Type[Exception], tuple] = Exception,
    jitter: bool = True,
) -> Callable[[F], F]:
    """Async retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        delay: Initial delay between retries in seconds
        backoff: Backoff multiplier for exponential backoff
        max_delay: Maximum delay between retries
        exceptions: Exception types to catch and retry
        jitter: Whether to add random jitter to delay

    Returns:
        Decorated function with retry logic
    """
    if not isinstance(exceptions, tuple):
        exceptions = (exceptions,)

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            current_delay = delay

            while True:
                try:
                    return await func(*args, **kwargs)

                except exceptions as e:
                    attempt += 1

                    if attempt >= max_attempts:
                        logger.error(
                            "Function %s failed after %d attempts: %s",
                            func.__name__,
                            max_attempts,
                            e
                        )
                        raise

                    if jitter:
                        jitter_delay = current_delay * (0.5 + random.random() * 0.5)
                    else:
                        jitter_delay = current_delay

                    sleep_time = min(jitter_delay, max_delay)

                    logger.warning(
                        "Function %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        func.__name__,
                        attempt,
                        max_attempts,
                        sleep_time,
                        e
                    )

                    await asyncio.sleep(sleep_time)
                    current_delay *= backoff

        return wrapper  # type: ignore

    return decorator


def retry_on_conflict(max_attempts: int = 5) -> Callable[[F], F]:
    """Re-run a read-modify-write operation after an optimistic-lock conflict."""
    return retry_async(
        max_attempts=max_attempts,
        delay=0.01,
        backoff=2.0,
        max_delay=0.5,
        exceptions=ConcurrentModificationError,
    )


class ErrorAggregator:
    """Aggregate and categorize errors for monitoring."""

    def __init__(self) -> None:
        """Initialize error aggregator."""
        self.errors: List[dict] = []
        self.error_counts: dict[str, int] = {}

    def record_error(
        self,
        error: Exception,
        context: dict[str, Any] | None = None
    ) -> None:
        """Record an error with context."""
        error_type = type(error).__name__
        error_record = {
            "timestamp": time.time(),
            "error_type": error_type,
            "message": str(error),
            "context": context or {}
        }

        self.errors.append(error_record)
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        # Keep only last 1000 errors
        if len(self.errors) > 1000:
            self.errors = self.errors[-1000:]

        logger.error(
            "Error recorded: %s - %s (context: %s)",
            error_type,
            str(error),
            context
        )

    def get_error_summary(self, hours: int = 24) -> dict[str, Any]:
        """Get error summary for the last N hours."""
        cutoff_time = time.time() - (hours * 3600)
        recent_errors = [
            error for error in self.errors
            if error["timestamp"] > cutoff_time
        ]

        summary: dict[str, Any] = {
            "total_errors": len(recent_errors),
            "error_types": {},
            "recent_errors": recent_errors[-10:]
        }

        for error in recent_errors:
            error_type = error["error_type"]
            summary["error_types"][error_type] = summary["error_types"].get(error_type, 0) + 1

        return summary

    def clear(self) -> None:
        """Drop recorded errors."""
        self.errors.clear()
        self.error_counts.clear()


# Global error aggregator instance
error_aggregator = ErrorAggregator()
