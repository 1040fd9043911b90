"""
Bounded retry with exponential backoff for durable-store calls.

Transient failures (locked database, busy file, IO timeout) are retried a
fixed number of times. Once the budget is spent the caller gets a single
exhaustion error carrying the last underlying failure.
"""
import asyncio
import logging
from typing import Any, Callable, Tuple, Type

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """All retry attempts failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def call_with_retries(
    operation: Callable[..., Any],
    *args,
    attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    exhausted_error: Type[RetryExhausted] = RetryExhausted,
    label: str = "store call",
    **kwargs
) -> Any:
    """Run a blocking operation in a worker thread, retrying transient failures.

    Args:
        operation: Callable to invoke
        *args: Positional arguments for the operation
        attempts: Total attempts including the first one
        base_delay: Delay after the first failure, doubled each retry
        max_delay: Upper bound for any single delay
        retry_on: Exception types treated as transient
        exhausted_error: RetryExhausted subclass raised when attempts run out
        label: Short description used in logs
        **kwargs: Keyword arguments for the operation

    Returns:
        Result from the operation

    Raises:
        exhausted_error: If every attempt failed with a transient error
    """
    last_error = None

    for attempt in range(1, attempts + 1):
        try:
            # Blocking store I/O stays off the event loop
            return await asyncio.to_thread(operation, *args, **kwargs)
        except retry_on as e:
            last_error = e
            if attempt >= attempts:
                break

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} failed (attempt {attempt}/{attempts}): {str(e)[:100]}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    logger.error(f"{label} failed after {attempts} attempts. Last error: {last_error}")
    raise exhausted_error(label, attempts, last_error)
