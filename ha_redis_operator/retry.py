"""
Retry helpers shared by the admin client and the reconciliation engine.

Provides:
- Exponential backoff with jitter (``backoff_delay``)
- A standalone async retry decorator for Redis operations
"""

import asyncio
import logging
import random
from functools import wraps
from typing import Callable, Any, Optional

from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    BusyLoadingError,
    ReadOnlyError,
)

RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    ReadOnlyError,
    BusyLoadingError,
    asyncio.TimeoutError,
)


def backoff_delay(base_delay: float, attempt: int, cap: Optional[float] = None) -> float:
    """
    Exponential backoff with up to 10% jitter to prevent thundering herds.

    Args:
        base_delay: Delay for the first attempt
        attempt: Zero-based attempt number
        cap: Optional upper bound applied before jitter

    Returns:
        Delay in seconds
    """
    backoff = base_delay * (2 ** min(attempt, 32))
    if cap is not None:
        backoff = min(backoff, cap)
    jitter = random.uniform(0, 0.1 * backoff)
    return backoff + jitter


def with_redis_retry(max_retries: int = 3, base_delay: float = 0.1) -> Callable:
    """
    Decorator adding retry logic to async Redis operations.

    Only network-level errors (RETRYABLE_EXCEPTIONS) are retried; anything
    else propagates immediately. Internal redis-py retries are disabled by
    the admin client, so this is the sole retry layer.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds (doubles each retry)

    Returns:
        Decorator function

    Example:
        @with_redis_retry(max_retries=3)
        async def probe():
            ...
    """
    logger = logging.getLogger("RedisRetry")

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_error = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except RETRYABLE_EXCEPTIONS as e:
                    last_error = e
                    if attempt < max_retries:
                        delay = backoff_delay(base_delay, attempt)
                        logger.warning(
                            f"Redis operation failed (attempt {attempt + 1}/{max_retries + 1}), "
                            f"retrying in {delay:.2f}s: {e}"
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"Redis operation failed after {max_retries + 1} attempts: {e}"
                        )

            raise last_error

        return wrapper
    return decorator
