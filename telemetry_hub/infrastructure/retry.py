"""
Bounded retry with exponential backoff.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float, multiplier: float = 2.0) -> float:
    """Delay before the retry following ``attempt`` (1-based)."""
    return min(base_delay * (multiplier ** (attempt - 1)), max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """
    Run an async operation until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        attempts: Total number of attempts (at least one is always made).
        base_delay: Delay after the first failure, in seconds.
        max_delay: Upper bound on any single delay.
        retry_on: Exception types that trigger a retry. Anything else propagates.
        description: Used in log messages.

    Returns:
        The operation's result.

    Raises:
        The last exception raised by the operation once attempts are exhausted.
    """
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")
