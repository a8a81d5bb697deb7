"""
Resilience patterns for provider calls and optimistic concurrency
"""

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from calsync import config
from calsync.exceptions import ConcurrencyError, RetryableProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def provider_retrying(
    max_attempts: int = None,
    base_delay: float = None,
    max_delay: float = None,
) -> AsyncRetrying:
    """
    Build a tenacity retry controller for provider calls.

    Only RetryableProviderError (timeouts, 5xx, 429, 408) is retried; any
    other error is raised on the first attempt.

    Args:
        max_attempts: Maximum number of attempts (default from config)
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for a single backoff delay
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts or config.PROVIDER_RETRY_ATTEMPTS),
        wait=wait_exponential(
            multiplier=config.PROVIDER_RETRY_BASE_DELAY if base_delay is None else base_delay,
            max=config.PROVIDER_RETRY_MAX_DELAY if max_delay is None else max_delay,
        ),
        retry=retry_if_exception_type(RetryableProviderError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def with_provider_retry(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Decorator for provider client methods.

    Reads retry settings from the instance (``self.retry_attempts`` and
    ``self.retry_base_delay``) so tests can disable backoff.
    """
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs) -> Any:
        retrying = provider_retrying(
            max_attempts=getattr(self, "retry_attempts", None),
            base_delay=getattr(self, "retry_base_delay", None),
        )
        async for attempt in retrying:
            with attempt:
                return await func(self, *args, **kwargs)

    return wrapper


async def with_conflict_retry(
    operation: Callable[[Any], Awaitable[T]],
    refetch: Callable[[], Awaitable[Any]],
    current: Any,
) -> T:
    """
    Run an etag-guarded write, refetching and retrying once on conflict.

    Args:
        operation: Coroutine factory taking the current version (e.g. an etag)
        refetch: Coroutine returning a fresh version
        current: The version the caller believes is current

    Returns:
        The operation result

    Raises:
        ConcurrencyError: If the retry also loses
    """
    try:
        return await operation(current)
    except ConcurrencyError as e:
        logger.info(f"Concurrency conflict ({e.message}); refetching and retrying once")
        fresh = await refetch()
        return await operation(fresh)
