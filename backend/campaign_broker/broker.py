"""Broker process: bus listener plus the delivery and scheduled-campaign loops."""

from __future__ import annotations

import signal

import anyio
from loguru import logger

from campaign_broker.container import Container, build_container
from campaign_broker.core.config import settings
from campaign_broker.core.logging import setup_logging
from campaign_broker.workers.polling import run_polling_loop


async def _watch_signals(stop_event: anyio.Event) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.bind(signal=signal.Signals(signum).name).info("broker_shutdown_requested")
            stop_event.set()
            return


async def run_broker(
    container: Container,
    stop_event: anyio.Event | None = None,
    *,
    handle_signals: bool = True,
) -> None:
    """Run until ``stop_event`` is set; in-flight ticks finish before exit."""

    stop_event = stop_event or anyio.Event()
    if container.settings.DB_AUTO_CREATE:
        await container.create_schema()

    async with anyio.create_task_group() as tg:
        if handle_signals:
            tg.start_soon(_watch_signals, stop_event)
        await tg.start(container.dispatcher.run, container.bus)
        async with anyio.create_task_group() as loops:
            loops.start_soon(
                lambda: run_polling_loop(
                    "delivery",
                    container.delivery_worker.run_once,
                    interval=container.settings.CAMPAIGN_PROCESSING_INTERVAL,
                    stop_event=stop_event,
                )
            )
            loops.start_soon(
                lambda: run_polling_loop(
                    "scheduler",
                    container.scheduler.run_once,
                    interval=container.settings.SCHEDULED_CAMPAIGN_INTERVAL,
                    stop_event=stop_event,
                )
            )
        # Loops have drained; stop the listener and signal watcher.
        tg.cancel_scope.cancel()
    logger.info("broker_stopped")


async def _main() -> None:
    container = build_container(settings)
    try:
        await run_broker(container)
    finally:
        await container.close()


def main() -> None:
    setup_logging(settings)
    anyio.run(_main)


if __name__ == "__main__":
    main()
