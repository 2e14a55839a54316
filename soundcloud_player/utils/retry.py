"""
Bounded retry with exponential backoff for transient network failures.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from soundcloud_player.exceptions import PlayerError

log = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """True for failures worth another attempt."""
    if isinstance(error, PlayerError):
        return error.retryable
    return isinstance(error, (asyncio.TimeoutError, ConnectionError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    description: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """
    Runs `operation` until it succeeds, a non-transient error is raised, or
    `max_attempts` is exhausted. The last error is re-raised unchanged.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            log.debug(
                f"{description} attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover
