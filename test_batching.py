"""
Tests for bounded batch execution.
"""

import asyncio

import pytest

from crawler.batching import chunked, run_batch
from crawler.errors import ConnectionLostError


def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []


async def test_results_keep_item_order_and_respect_concurrency():
    in_flight = 0
    peak = 0

    async def work(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001 * (5 - item))
        in_flight -= 1
        return item * 10

    results = await run_batch([1, 2, 3, 4], work, concurrency=2)

    assert results == [10, 20, 30, 40]
    assert peak == 2


async def test_unexpected_errors_are_misses():
    async def work(item):
        if item == 2:
            raise ValueError("bad page")
        return item

    assert await run_batch([1, 2, 3], work, concurrency=2) == [1, None, 3]


async def test_crawl_errors_surface_after_batch_settles():
    finished = []

    async def work(item):
        if item == 1:
            raise ConnectionLostError(url="https://x/1", detail="closed")
        await asyncio.sleep(0)
        finished.append(item)
        return item

    with pytest.raises(ConnectionLostError):
        await run_batch([1, 2, 3], work, concurrency=3)
    assert finished == [2, 3]
