"""
Bounded concurrent execution for delivery fan-out and the retry sweep.
"""
import asyncio
from typing import Awaitable, Callable, Iterable, TypeVar

from app.config import settings


T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    limit: int | None = None,
) -> list[R | BaseException]:
    """
    Run fn over items concurrently, at most `limit` at a time.

    Results come back in input order. An exception raised for one item is
    returned in that item's slot instead of cancelling the others.
    """
    semaphore = asyncio.Semaphore(limit or settings.WEBHOOK_MAX_CONCURRENCY)

    async def _run(item: T) -> R:
        async with semaphore:
            return await fn(item)

    return await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)
