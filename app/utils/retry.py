"""
Async retry helper for transient I/O failures.

Used around VPN panel calls, payment gateway calls and pool creation.

Policy:
- exponential backoff with +-20% jitter, capped at max_delay
- only exceptions listed in retry_on are retried
- domain errors (4xx mapped by the caller, validation) propagate immediately
- the last exception is re-raised unchanged once attempts are exhausted
- no logging here, callers log with their own context
"""

import asyncio
import inspect
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar
import asyncpg
import httpx

T = TypeVar("T")

DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0

TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.PostgresError,
    asyncio.TimeoutError,
    httpx.TransportError,  # connect/read errors and timeouts
    httpx.HTTPStatusError,  # raised by raise_for_status() on 5xx
    ConnectionError,
    OSError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (0-based)."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> T:
    """
    Call `fn` until it succeeds or `retries` extra attempts are used up.

    Args:
        fn: zero-argument callable returning an awaitable (or a plain value)
        retries: extra attempts after the first one (2 -> 3 calls total)
        base_delay: first backoff delay in seconds
        max_delay: backoff cap in seconds
        retry_on: exception types considered transient

    Raises:
        The original exception when it is not transient or attempts ran out.
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except retry_on:
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")
