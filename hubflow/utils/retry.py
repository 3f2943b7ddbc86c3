from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base)
    await asyncio.sleep(delay)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    base: float = 1.5,
    description: str = "operation",
) -> T:
    """Await ``operation`` again after a backoff while it raises ``TransientError``.

    Any other exception, or the last transient one, propagates.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientError as exc:
            if attempt >= max_retries:
                raise
            attempt += 1
            logger.warning(
                f"{description} failed transiently ({exc}), retry {attempt}/{max_retries}"
            )
            await schedule_retry(attempt, base=base)
