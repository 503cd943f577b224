"""Concurrency helpers for bounding vendor calls and background thread usage."""

from __future__ import annotations

from functools import partial
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import anyio

T = TypeVar("T")
R = TypeVar("R")


async def run_in_thread_limited(
    limiter: anyio.CapacityLimiter, func: Callable[..., Any], *args: Any, **kwargs: Any
):
    """Run a sync callable in a worker thread with bounded concurrency."""

    return await anyio.to_thread.run_sync(partial(func, *args, **kwargs), limiter=limiter)


async def map_bounded(
    func: Callable[[T], Awaitable[R]],
    items: Iterable[T],
    *,
    limit: int,
) -> list[R]:
    """Await ``func`` for every item with at most ``limit`` calls in flight.

    Results keep the order of ``items``. ``func`` is expected to absorb its
    own errors; an exception escaping it cancels the remaining calls.
    """

    materialized = list(items)
    results: list[Any] = [None] * len(materialized)
    limiter = anyio.CapacityLimiter(max(1, limit))

    async def _run(index: int, item: T) -> None:
        async with limiter:
            results[index] = await func(item)

    async with anyio.create_task_group() as tg:
        for index, item in enumerate(materialized):
            tg.start_soon(_run, index, item)
    return results
