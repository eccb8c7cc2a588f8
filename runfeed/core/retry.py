"""Retry with exponential backoff.

Returns a tagged result instead of raising once attempts are exhausted, so
callers decide whether a failure is fatal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of a retried operation.

    Attributes:
        ok: True if an attempt succeeded
        value: Value returned by the successful attempt (None on failure)
        error: Last exception raised (None on success)
        attempts: Number of attempts made
    """

    ok: bool
    value: T | None
    error: BaseException | None
    attempts: int


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before the retry that follows a failed ``attempt`` (0-based): 1s, 2s, 4s, capped."""
    return min(base_delay * (2**attempt), max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total attempts (at least 1)
        base_delay: Delay after the first failure in seconds
        max_delay: Upper bound for any single delay
        retry_on: Exception types that trigger a retry; others propagate
        label: Name used in log lines
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        RetryResult tagged with success or failure
    """
    attempts = max(1, max_attempts)
    last_error: BaseException | None = None

    for attempt in range(attempts):
        try:
            value = await operation()
        except retry_on as e:
            last_error = e
            if attempt < attempts - 1:
                wait_time = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"{label} failed: {e!s}. Retrying in {wait_time}s (attempt {attempt + 1}/{attempts})",
                    error_type=type(e).__name__,
                )
                await sleep(wait_time)
                continue
            logger.error(f"{label} failed after {attempts} attempts: {e!s}", error_type=type(e).__name__)
        else:
            return RetryResult(ok=True, value=value, error=None, attempts=attempt + 1)

    return RetryResult(ok=False, value=None, error=last_error, attempts=attempts)
