"""
Bounded retry for persistence calls.

Only transient failures (lost connections, timeouts) are retried. Anything
else, including validation and not-found errors, is raised on the first
attempt. Wrapped operations must be safe to repeat: the wrapper does not
deduplicate side effects.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from shared.errors import NotFoundError, ServiceError, ServiceException, TransientStoreError
from shared.logging import get_logger

T = TypeVar("T")

TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    TransientStoreError,
)

TRANSIENT_MESSAGE_MARKERS = (
    "econnrefused",
    "econnreset",
    "etimedout",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "connection terminated",
    "network",
)

logger = get_logger("retry")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_retries: int = 3,
                 initial_delay: float = 0.1,
                 backoff_multiplier: float = 2.0,
                 max_delay: float = 2.0,
                 jitter: bool = False,
                 backoff_strategy: str = "exponential",
                 transient_exceptions: Tuple[Type[BaseException], ...] = ()):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy
        self.transient_exceptions = TRANSIENT_EXCEPTIONS + tuple(transient_exceptions)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def is_transient_error(exc: BaseException, config: Optional[RetryConfig] = None) -> bool:
    """Return True for connectivity/timeout class failures."""
    # Validation and not-found errors are never retried, whatever their message
    if isinstance(exc, ServiceException) and not isinstance(exc, TransientStoreError):
        return False

    transient = config.transient_exceptions if config else TRANSIENT_EXCEPTIONS
    if isinstance(exc, transient):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay before the retry that follows `attempt`."""
    if config.backoff_strategy == "exponential":
        delay = config.initial_delay * (config.backoff_multiplier ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.initial_delay * attempt
    else:
        delay = config.initial_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def execute_with_retry(operation: Callable[[], Awaitable[T]],
                             *,
                             operation_name: str,
                             config: Optional[RetryConfig] = None) -> T:
    """Run `operation`, retrying transient failures with backoff.

    The last error is re-raised unchanged once retries are exhausted, and
    non-transient errors are re-raised immediately.
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await operation()
        except Exception as exc:
            if not is_transient_error(exc, config):
                logger.debug(
                    "Non-retryable error",
                    operation=operation_name,
                    attempt=attempt,
                    error=str(exc),
                )
                raise

            if attempt >= config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    error=str(exc),
                )
                raise

            delay = _calculate_delay(attempt, config)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                operation=operation_name,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
            continue

        if attempt > 1:
            logger.info("Retry succeeded", operation=operation_name, attempt=attempt)
        return result

    raise RuntimeError(f"Retry loop for {operation_name} exited without a result")  # pragma: no cover


def validate_query_result(result: Any, *, allow_empty: bool = True, operation_name: str = "query") -> Any:
    """Reject missing query results before they reach callers."""
    if result is None:
        raise ServiceError(f"{operation_name} returned no result")
    if not allow_empty and isinstance(result, (list, tuple)) and len(result) == 0:
        raise NotFoundError(f"{operation_name} returned no rows")
    return result
