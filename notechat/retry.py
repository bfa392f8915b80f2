"""Bounded retry with exponential backoff for network-class errors."""
import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Only errors that carry a true ``retryable`` flag are retried.

    Auth failures and bad requests are marked non-retryable by the client,
    since repeating them cannot help.
    """
    return bool(getattr(error, "retryable", False))


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    op_name: str,
) -> T:
    """Await ``operation()`` up to ``attempts + 1`` times.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        attempts: Number of retries after the first try
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for any single delay
        op_name: Name used in log events

    Returns:
        The operation's result

    Raises:
        The last error once retries are exhausted, or immediately for
        non-retryable errors.
    """
    attempt = 0
    while True:
        try:
            result = await operation()
            if attempt > 0:
                logger.info("retry_succeeded", op=op_name, attempt=attempt)
            return result
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= attempts:
                logger.error(
                    "retries_exhausted",
                    op=op_name,
                    attempts=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "retrying_after_error",
                op=op_name,
                attempt=attempt + 1,
                max_attempts=attempts + 1,
                delay=delay,
                error=str(e)[:200],
            )
            await asyncio.sleep(delay)
            attempt += 1
