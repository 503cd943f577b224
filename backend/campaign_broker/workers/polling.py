"""Fixed-interval polling loop shared by the background workers."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import anyio
from loguru import logger

from campaign_broker.core.logging import worker_ctx_var


async def run_polling_loop(
    name: str,
    tick: Callable[[], Awaitable[Any]],
    *,
    interval: float,
    stop_event: anyio.Event,
) -> None:
    """Call ``tick`` every ``interval`` seconds until ``stop_event`` is set.

    A tick in progress always finishes before the loop exits. Tick errors are
    logged and the loop keeps going.
    """

    token = worker_ctx_var.set(name)
    logger.bind(interval=interval).info("worker_started")
    try:
        while not stop_event.is_set():
            try:
                await tick()
            except Exception:
                logger.exception("worker_tick_failed")
            with anyio.move_on_after(interval):
                await stop_event.wait()
    finally:
        logger.info("worker_stopped")
        worker_ctx_var.reset(token)
