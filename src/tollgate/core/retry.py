"""
Gate an operation behind a rate limiter, optionally waiting and retrying.

`limit` admits or refuses immediately. `limit_with_retry` waits the
limiter's `retry_after` between attempts; this wait is the only place
anything in tollgate suspends, and the only place cancellation is
honoured.
"""

import asyncio
import functools
import threading
import time
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from tollgate.core.errors import ConfigurationError, RateLimitExceeded, RetryCancelled
from tollgate.core.limiter import AsyncRateLimiter, RateLimiter
from tollgate.core.types import RateLimitContext, RateLimitResult

logger = structlog.get_logger()

T = TypeVar("T")


def _validate_retries(max_retries: int) -> None:
    if max_retries < 0:
        raise ConfigurationError(f"max_retries cannot be negative, got {max_retries}")


def _delay_seconds(result: RateLimitResult) -> float:
    return (result.retry_after or 0) / 1000


class RetryPolicy:
    """
    Blocking admission wrapper around a `RateLimiter`.

    Example:
        >>> policy = RetryPolicy(RateLimiter(requests=10, window=1_000))
        >>> policy.limit(lambda: resize(image), {"client_id": "worker-1"})
    """

    def __init__(self, limiter: RateLimiter) -> None:
        self.limiter = limiter

    def limit(
        self,
        operation: Callable[[], T],
        context: RateLimitContext | None = None,
    ) -> T:
        """Run `operation` if a token is available, else raise RateLimitExceeded."""
        result = self.limiter.consume(context)
        if not result.allowed:
            raise RateLimitExceeded(
                f"Rate limit exceeded. Retry after {result.retry_after}ms",
                result,
            )
        return operation()

    def limit_with_retry(
        self,
        operation: Callable[[], T],
        context: RateLimitContext | None = None,
        max_retries: int = 3,
        cancel_event: threading.Event | None = None,
    ) -> T:
        """
        Run `operation` once admitted, trying at most `max_retries + 1` times.

        Between attempts the calling thread waits `retry_after` ms. Setting
        `cancel_event` from another thread ends the wait early and raises
        RetryCancelled.
        """
        _validate_retries(max_retries)

        attempt = 0
        while True:
            attempt += 1
            result = self.limiter.consume(context)
            if result.allowed:
                return operation()

            if attempt > max_retries:
                raise RateLimitExceeded(
                    f"Rate limit exceeded after {max_retries} retries",
                    result,
                )

            if cancel_event is not None and cancel_event.is_set():
                raise RetryCancelled("Rate limit retry cancelled", result)

            delay = _delay_seconds(result)
            logger.debug(
                "rate_limit_retry_wait",
                key=result.key,
                attempt=attempt,
                delay_ms=result.retry_after,
            )
            if cancel_event is None:
                time.sleep(delay)
            elif cancel_event.wait(delay):
                raise RetryCancelled("Rate limit retry cancelled", result)


class AsyncRetryPolicy:
    """
    Asyncio admission wrapper around an `AsyncRateLimiter`.

    Waiting uses `asyncio.sleep`, so other tasks keep running. Besides
    the optional `cancel_event`, cancelling the surrounding task
    interrupts the wait as usual.
    """

    def __init__(self, limiter: AsyncRateLimiter) -> None:
        self.limiter = limiter

    async def limit(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RateLimitContext | None = None,
    ) -> T:
        """Await `operation` if a token is available, else raise RateLimitExceeded."""
        result = await self.limiter.consume(context)
        if not result.allowed:
            raise RateLimitExceeded(
                f"Rate limit exceeded. Retry after {result.retry_after}ms",
                result,
            )
        return await operation()

    async def limit_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RateLimitContext | None = None,
        max_retries: int = 3,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """Async counterpart of `RetryPolicy.limit_with_retry`."""
        _validate_retries(max_retries)

        attempt = 0
        while True:
            attempt += 1
            result = await self.limiter.consume(context)
            if result.allowed:
                return await operation()

            if attempt > max_retries:
                raise RateLimitExceeded(
                    f"Rate limit exceeded after {max_retries} retries",
                    result,
                )

            if cancel_event is not None and cancel_event.is_set():
                raise RetryCancelled("Rate limit retry cancelled", result)

            logger.debug(
                "rate_limit_retry_wait",
                key=result.key,
                attempt=attempt,
                delay_ms=result.retry_after,
            )
            await asyncio.sleep(_delay_seconds(result))


def rate_limited(
    policy: RetryPolicy | AsyncRetryPolicy,
    context: RateLimitContext | None = None,
    max_retries: int = 0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator that routes every call of a function through `policy`.

    With `max_retries=0` a refused call raises at once; otherwise the
    call waits and retries like `limit_with_retry`. Use an
    `AsyncRetryPolicy` for coroutine functions.

    Example:
        >>> @rate_limited(policy, {"resource": "reports"}, max_retries=2)
        ... def build_report(day): ...
    """
    _validate_retries(max_retries)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if isinstance(policy, AsyncRetryPolicy):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                operation = functools.partial(func, *args, **kwargs)
                if max_retries == 0:
                    return await policy.limit(operation, context)
                return await policy.limit_with_retry(operation, context, max_retries)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            operation = functools.partial(func, *args, **kwargs)
            if max_retries == 0:
                return policy.limit(operation, context)
            return policy.limit_with_retry(operation, context, max_retries)

        return wrapper

    return decorator
