"""Retry helpers using tenacity.

The migration core never retries on its own: a failed page aborts its
traversal and a failed item is counted. These helpers are the external
retry wrapper callers opt into, e.g. around legacy record reads.
"""

import asyncio
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from catalog_migration.client.exceptions import (
    RateLimitError,
    ServerError,
    TransientNetworkError,
)
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    TransientNetworkError,
    ServerError,
    RateLimitError,
)


def retry_with_backoff(
    max_attempts: int = 5,
    min_wait: float = 2,
    max_wait: float = 60,
    retry_on_exceptions: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
) -> Callable[[F], F]:
    """General retry decorator with exponential backoff and jitter.

    Args:
        max_attempts: Maximum number of attempts (1 disables retrying)
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        retry_on_exceptions: Exception types that trigger a retry

    Returns:
        Decorator for sync or async callables
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt_obj in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(retry_on_exceptions),
                reraise=True,
            ):
                with attempt_obj:
                    attempt = attempt_obj.retry_state.attempt_number
                    if attempt > 1:
                        logger.info(
                            "retry_attempt",
                            function=func.__name__,
                            attempt=attempt,
                            max_attempts=max_attempts,
                        )
                    return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            @retry(
                stop=stop_after_attempt(max_attempts),
                wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(retry_on_exceptions),
                reraise=True,
            )
            def _inner() -> Any:
                return func(*args, **kwargs)

            return _inner()

        if asyncio.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator


def with_retries(
    func: Callable[..., Awaitable[Any]],
    max_attempts: int,
    min_wait: float = 2,
    max_wait: float = 60,
) -> Callable[..., Awaitable[Any]]:
    """Wrap an async callable in retry_with_backoff, or return it as-is when max_attempts <= 1."""
    if max_attempts <= 1:
        return func
    return retry_with_backoff(max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait)(
        func
    )
