"""Bounded retry with exponential backoff for async operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or ``attempts`` run out.

    The delay before retry ``n`` (1-based) is ``base_delay * 2 ** (n - 1)``.
    Exceptions outside ``retry_on`` propagate immediately.

    Raises:
        The last exception raised by ``operation`` once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                logger.warning("%s failed after %d attempts: %s", description, attempts, exc)
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.info(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, attempts, exc, delay,
            )
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
