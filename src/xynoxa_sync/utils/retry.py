"""Bounded exponential backoff for remote calls."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from xynoxa_sync.services.exceptions import TransientNetworkError

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (TransientNetworkError,),
) -> T:
    """Await ``func()`` and retry it with exponential backoff.

    Args:
        func: Zero-argument coroutine factory to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Exception types that are retried.

    Returns:
        Result of the coroutine.

    Raises:
        The last exception once all retries are exhausted. Other exceptions
        propagate immediately.
    """
    backoff = initial_backoff
    attempt = 0
    while True:
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt >= max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise
            attempt += 1
            logger.warning(
                f"Attempt {attempt}/{max_retries + 1} failed: {e}. Retrying in {backoff:.1f}s..."
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)
