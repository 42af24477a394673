"""
Bounded-concurrency batch execution.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, List, Optional, Sequence, TypeVar

from .errors import CrawlError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


async def run_batch(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Optional[R]]],
    concurrency: int,
) -> List[Optional[R]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Results come back in item order. An unexpected exception turns that item
    into a miss (``None``); a :class:`CrawlError` is re-raised once the whole
    batch has settled.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def _bounded(item: T) -> Optional[R]:
        async with semaphore:
            return await worker(item)

    settled = await asyncio.gather(*(_bounded(i) for i in items), return_exceptions=True)

    results: List[Optional[R]] = []
    fatal: Optional[CrawlError] = None
    for item, outcome in zip(items, settled):
        if isinstance(outcome, CrawlError):
            fatal = fatal or outcome
            results.append(None)
        elif isinstance(outcome, asyncio.CancelledError):
            raise outcome
        elif isinstance(outcome, BaseException):
            logger.warning("Item %s failed: %s", item, outcome)
            results.append(None)
        else:
            results.append(outcome)
    if fatal is not None:
        raise fatal
    return results
