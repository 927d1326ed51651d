"""
Concurrency helpers: bounded fan-out and in-flight request deduplication.

Everything runs on a single asyncio event loop, so the deduplication map needs
no lock: check-and-insert happens without an intervening await.
"""

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Iterable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def bounded_gather(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
    return_exceptions: bool = False,
) -> list[Any]:
    """
    Run worker(item) for every item with at most ``limit`` in flight.

    Results come back in input order regardless of completion order. With
    return_exceptions=True a failing item yields its exception instead of
    cancelling the rest.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    semaphore = asyncio.Semaphore(limit)

    async def run_one(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return await asyncio.gather(
        *(run_one(item) for item in items), return_exceptions=return_exceptions
    )


class RequestDeduplicator:
    """
    Memoizes in-flight computations by key.

    Concurrent callers with the same key await one shared task. The entry is
    dropped as soon as the task settles, so later callers start fresh (and hit
    whatever persistent cache the computation wrote).
    """

    def __init__(self) -> None:
        self._pending: dict[Hashable, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[R]]) -> R:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.info("request_deduplicated", key=str(key))
        # One waiter cancelling must not cancel the work the others share
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter re-raises it itself
            task.exception()
