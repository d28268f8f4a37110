"""
Constant-interval retry built on tenacity.

Two terminal outcomes are kept apart:
- RetryAttemptsExhausted: every attempt failed with a retryable error
- asyncio.CancelledError: the surrounding task was cancelled, propagated as-is

Errors rejected by the retry predicate are re-raised unchanged on the first
occurrence.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_fixed,
)

from ..errors import RetryAttemptsExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retry_any(exception: BaseException) -> bool:
    # CancelledError is a BaseException and must never be retried
    return isinstance(exception, Exception)


async def backoff(
    fn: Callable[[], Awaitable[T]],
    interval: float,
    max_attempts: int,
    retry_on: Optional[Callable[[BaseException], bool]] = None,
    description: str = "operation",
) -> T:
    """
    Call fn until it succeeds, waiting a constant interval between attempts.

    Args:
        fn: Zero-argument coroutine function to call
        interval: Seconds to wait between attempts
        max_attempts: Total number of calls before giving up
        retry_on: Predicate selecting which exceptions are retried (default: any Exception)
        description: Human readable name used in logs and errors

    Returns:
        The value returned by the first successful call

    Raises:
        RetryAttemptsExhausted: If every attempt failed with a retryable error
        asyncio.CancelledError: If cancelled while calling or waiting
    """
    predicate = retry_on or _retry_any

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_exception(lambda e: isinstance(e, Exception) and predicate(e)),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=False,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await fn()
    except RetryError as e:
        last = e.last_attempt.exception()
        raise RetryAttemptsExhausted(
            f"{description}: reached maximum attempts ({max_attempts})",
            attempts=max_attempts,
            last_exception=last,
        ) from last

    return result


async def retry_forever(
    fn: Callable[[], Awaitable[T]],
    interval: float,
    retry_on: Callable[[BaseException], bool],
    description: str = "operation",
) -> T:
    """
    Call fn until it succeeds, retrying only errors selected by retry_on.

    Any other error is raised immediately. Only cancellation ends the loop
    otherwise.
    """
    retrying = AsyncRetrying(
        stop=stop_never,
        wait=wait_fixed(interval),
        retry=retry_if_exception(lambda e: isinstance(e, Exception) and retry_on(e)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            result = await fn()

    logger.debug(f"[BACKOFF] {description} succeeded")
    return result
