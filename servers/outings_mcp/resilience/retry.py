"""Retry with exponential backoff for upstream fetches."""

import asyncio
import random
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    jitter: bool = False,
    retry_after: Optional[float] = None,
) -> float:
    """Delay before the next attempt (attempt is zero-based).

    A server-provided ``retry_after`` wins over the computed backoff but is
    still capped at ``max_delay``.
    """
    if retry_after is not None and retry_after >= 0:
        return min(retry_after, max_delay)
    delay = min(base_delay * (exponential_base**attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Optional[Sleep] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator for async retry with exponential backoff.

    Only ``retryable_exceptions`` are retried; anything else propagates on
    the first attempt. If the raised exception carries a ``retry_after``
    attribute it is honoured.

    Args:
        max_attempts: Maximum number of attempts, including the first
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Add randomness to delay to prevent thundering herd
        retryable_exceptions: Tuple of exception types to retry on
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Decorated async function with retry logic
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_call(
                func,
                *args,
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter,
                retryable_exceptions=retryable_exceptions,
                sleep=sleep,
                **kwargs,
            )

        return wrapper

    return decorator


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Optional[Sleep] = None,
    **kwargs: Any,
) -> T:
    """Execute a function with retry logic (non-decorator version).

    Raises:
        Last exception if all retries fail
    """
    sleep = sleep or asyncio.sleep
    name = getattr(func, "__name__", repr(func))
    last_exception: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            last_exception = e

            if attempt < max_attempts - 1:
                delay = backoff_delay(
                    attempt,
                    base_delay,
                    max_delay,
                    exponential_base,
                    jitter,
                    getattr(e, "retry_after", None),
                )
                logger.warning(
                    "retry_attempt",
                    function=name,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay=round(delay, 2),
                    error=str(e),
                )
                await sleep(delay)

    logger.error(
        "retry_exhausted",
        function=name,
        max_attempts=max_attempts,
        error=str(last_exception),
    )
    raise last_exception  # type: ignore
