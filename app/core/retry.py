"""
Retry utilities with exponential backoff for async functions.

Used around outbound calls to the agent-testing platform, where a replay
request may hit a restarting service or a saturated connection pool.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    httpx.TransportError,
)

class RetryableError(Exception):
    """
    Exception that should be retried with exponential backoff.

    Raised for transient failures that may succeed on a later attempt:
    - 502/503/504 responses from the platform
    - 429 rate limiting
    - connection resets during a rolling deployment
    """
    pass

class NonRetryableError(Exception):
    """
    Exception that should NOT be retried.

    For callers to raise on deterministic failures; async_retry re-raises it
    immediately, even when it also matches a `retry_on` type.
    """
    pass

def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
) -> Callable[[F], F]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_delay: Initial delay in seconds between attempts (default: 1.0)
        max_delay: Maximum delay in seconds between attempts (default: 10.0)
        retry_on: Extra exception types treated as transient

    Example:
        @async_retry(max_attempts=3, base_delay=0.5, max_delay=5.0)
        async def fetch_transcript():
            return await client.post('/replay')

    Error Handling:
    - RetryableError and `retry_on` types: retried up to max_attempts times
    - NonRetryableError: raised immediately
    - Anything else: raised immediately, it is not a transport problem

    Backoff Strategy:
    - delay = base_delay * (2 ^ attempt), capped at max_delay
    - warning logged per retry, error logged once attempts are exhausted
    """
    transient = (RetryableError, *retry_on)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)

                except NonRetryableError:
                    raise

                except transient as e:
                    if attempt >= max_attempts - 1:
                        logger.error(
                            f"All {max_attempts} attempts failed for {func.__name__}. "
                            f"Final error: {str(e)}"
                        )
                        raise
                    delay = min(base_delay * (2 ** attempt), max_delay)
                    logger.warning(
                        f"Retry attempt {attempt + 1}/{max_attempts} for {func.__name__}. "
                        f"Error: {str(e)}. Waiting {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError(f"{func.__name__} called with max_attempts={max_attempts}")

        return wrapper
    return decorator
