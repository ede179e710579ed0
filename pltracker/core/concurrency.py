"""
Bounded-concurrency mapping over a list of inputs on one asyncio event loop.
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    worker: Callable[[T, int], Awaitable[R]],
) -> List[R]:
    """
    Run worker(item, index) for every item with at most `concurrency` calls in flight.

    Runners share one cursor and keep claiming the next unclaimed index until the
    list is exhausted. results[i] always belongs to items[i]; completion order is
    not guaranteed. worker should catch its own errors and encode them in its
    return value, since one raising worker fails the whole gather.
    """
    items = list(items)
    limit = max(1, min(concurrency, len(items)))
    results: List[Any] = [None] * len(items)
    cursor = 0

    async def runner() -> None:
        nonlocal cursor
        while True:
            index = cursor
            cursor += 1
            if index >= len(items):
                return
            results[index] = await worker(items[index], index)

    await asyncio.gather(*(runner() for _ in range(limit)))
    return results
