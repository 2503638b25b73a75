"""
Bounded worker pool over a shared queue.

A fixed number of asyncio workers pull items from one queue until it is
empty. Each worker accumulates its own results; they are merged once every
worker has finished, so no list is appended to concurrently.
"""
import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")
R = TypeVar("R")

Sleep = Callable[[float], Awaitable[None]]


async def run_bounded(
    items: Iterable[T],
    concurrency: int,
    handler: Callable[[T], Awaitable[List[R]]],
    delay_after: float = 0.0,
    sleep: Optional[Sleep] = None,
) -> List[R]:
    """
    Process items with at most `concurrency` handlers in flight.

    Args:
        items: Work items
        concurrency: Number of workers
        handler: Coroutine returning a list of results per item
        delay_after: Pause a worker for this long after each item
        sleep: Sleep coroutine (asyncio.sleep by default)

    Returns:
        Concatenated handler results (no ordering guarantee across workers)

    Raises:
        Whatever a handler raises; remaining workers are cancelled first.
    """
    sleep = sleep or asyncio.sleep
    queue: asyncio.Queue = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)

    if queue.empty():
        return []

    async def worker() -> List[R]:
        local: List[R] = []
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return local
            local.extend(await handler(item))
            if delay_after > 0:
                await sleep(delay_after)

    tasks = [asyncio.create_task(worker()) for _ in range(max(1, min(concurrency, queue.qsize())))]
    try:
        per_worker = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    return [result for local in per_worker for result in local]
