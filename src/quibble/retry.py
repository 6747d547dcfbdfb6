"""Retry with capped exponential backoff for flaky agent invocations."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY = 1.0
MAX_DELAY = 8.0
JITTER = 0.2

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "network",
    "socket",
    "rate limit",
    "429",
    "too many requests",
    "503",
    "service unavailable",
    "502",
    "bad gateway",
)


def is_transient_error(exc: BaseException) -> bool:
    """Return True for failures that are worth another attempt."""
    if getattr(exc, "transient", False):
        return True
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def backoff_delay(
    attempt: int,
    *,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    jitter: float = JITTER,
) -> float:
    """Delay before the retry that follows *attempt* (1-based)."""
    capped = min(base_delay * (2 ** (attempt - 1)), max_delay)
    spread = capped * jitter * random.uniform(-1.0, 1.0)
    return max(0.0, capped + spread)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    jitter: float = JITTER,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation* until it succeeds or a non-retryable error occurs.

    The final attempt's error is re-raised as is, so callers see the real
    failure rather than a wrapper.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt == max_attempts or not is_retryable(e):
                raise
            delay = backoff_delay(
                attempt, base_delay=base_delay, max_delay=max_delay, jitter=jitter,
            )
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.1fs",
                attempt, max_attempts, e, delay,
            )
            await sleep(delay)
