import asyncio
import functools
import random
from dataclasses import dataclass
from typing import List, Type, TypeVar, Callable, Any, Coroutine, Optional

import httpx

from utils.loguru_setup import logger, capture_context, restore_context

RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}

T = TypeVar('T')


class RetryableError(Exception):
    """Exception that should trigger a retry."""
    pass


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    retryable_exceptions: Optional[List[Type[Exception]]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.retryable_exceptions is None:
            self.retryable_exceptions = [RetryableError, asyncio.TimeoutError,
                                         ConnectionError, TimeoutError,
                                         httpx.TransportError]


def is_retryable_status(status_code: int) -> bool:
    """True for HTTP status codes worth another attempt."""
    return status_code in RETRYABLE_STATUS_CODES


def with_retry(
        retry_config: RetryConfig,
        operation_name: str = "operation"
) -> Callable[[Callable[..., Coroutine[Any, Any, T]]], Callable[..., Coroutine[Any, Any, T]]]:
    """
    Decorator for retrying an async function with exponential backoff.
    Preserves trace context across retry attempts.

    Args:
        retry_config: Configuration for retry behavior
        operation_name: Name of the operation for logging purposes

    Returns:
        Decorated function that implements retry logic
    """
    def decorator(func: Callable[..., Coroutine[Any, Any, T]]) -> Callable[..., Coroutine[Any, Any, T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            # Every attempt runs under the trace context of the first one
            original_context = capture_context()

            attempt = 0
            last_exception = None

            while attempt < retry_config.max_attempts:
                try:
                    restore_context(original_context)
                    return await func(*args, **kwargs)
                except Exception as e:
                    should_retry = any(
                        isinstance(e, exception_type)
                        for exception_type in retry_config.retryable_exceptions
                    )

                    if not should_retry:
                        logger.debug(f"Non-retryable {type(e).__name__} in {operation_name}")
                        raise

                    attempt += 1
                    last_exception = e

                    if attempt >= retry_config.max_attempts:
                        logger.warning(
                            f"Maximum retry attempts ({retry_config.max_attempts}) reached for {operation_name}",
                            error=str(e)
                        )
                        break

                    # Exponential backoff with jitter
                    delay = min(
                        retry_config.base_delay * (2 ** (attempt - 1)),
                        retry_config.max_delay
                    )
                    jitter = random.uniform(0, 0.1 * delay)
                    total_delay = delay + jitter

                    logger.warning(
                        f"Retry attempt {attempt} for {operation_name} after {total_delay:.2f}s delay",
                        error=str(e),
                        error_type=type(e).__name__
                    )

                    await asyncio.sleep(total_delay)

            restore_context(original_context)
            logger.error(f"All retry attempts failed for {operation_name}")
            raise last_exception

        return wrapper

    return decorator
