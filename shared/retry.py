"""
VaultRelay Retry Utilities

Backoff schedule for public key registration and a bounded retry
combinator used for cache-busting key lookups.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

# Registration backoff cap
REGISTRATION_BACKOFF_CAP_HOURS = 24


def registration_wait_hours(failure_count: int) -> int:
    """
    Hours to wait before the next registration attempt.

    Doubles per failure and is capped at 24 hours:
    0 -> 1, 1 -> 2, 2 -> 4, ..., 5+ -> 24.
    """
    return min(2 ** max(failure_count, 0), REGISTRATION_BACKOFF_CAP_HOURS)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a bounded retry run."""
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or re-raise the last error."""
        if self.error is not None:
            raise self.error
        return self.value


async def retry_bounded(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    before_attempt: Optional[Callable[[int], Any]] = None,
    backoff: Optional[Callable[[int], float]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    """
    Run an async operation up to ``attempts`` times.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Maximum number of calls (must be >= 1)
        retry_on: Exception types that consume an attempt; anything else propagates
        before_attempt: Called with the 1-based attempt number before each call
        backoff: Seconds to wait after failed attempt n (1-based)
        sleep: Awaitable sleep, injectable for tests

    Returns:
        RetryResult with either the value or the last error
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        if before_attempt is not None:
            before_attempt(attempt)
        try:
            value = await operation()
            return RetryResult(value=value, attempts=attempt)
        except retry_on as e:
            last_error = e
            logger.debug(
                "retry_attempt_failed",
                attempt=attempt,
                max_attempts=attempts,
                error=str(e)
            )
            if backoff is not None and attempt < attempts:
                await sleep(backoff(attempt))

    return RetryResult(error=last_error, attempts=attempts)
