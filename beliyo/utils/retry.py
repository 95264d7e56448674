"""
Bounded retry helpers.

The backing tables are multi-writer without transactions, so callers that
need to observe their own write re-read with a small, bounded number of
attempts and accept that the window may not close.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from beliyo.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def read_after_write(
    fetch: Callable[[], Awaitable[T]],
    accept: Callable[[T], bool],
    attempts: int = 3,
    delay: float = 0.2,
) -> Optional[T]:
    """
    Re-read authoritative state until ``accept`` holds.

    Returns the first accepted value, or None when every attempt was rejected.
    """
    for attempt in range(1, attempts + 1):
        value = await fetch()
        if accept(value):
            return value
        if attempt < attempts:
            await asyncio.sleep(delay)
    logger.debug("read_after_write_exhausted", attempts=attempts)
    return None


def backoff_delay(delays: Sequence[float], retry_count: int) -> float:
    """Delay for the given 1-based retry, clamped to the last entry of the schedule."""
    if not delays:
        return 0.0
    index = min(max(retry_count - 1, 0), len(delays) - 1)
    return delays[index]
