"""Route bus messages to consumers, dropping replays by event id."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Mapping

import anyio
from loguru import logger
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from campaign_broker.bus.message_bus import MessageBus
from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.models.processed_event import ProcessedEvent

Handler = Callable[[Mapping[str, Any]], Awaitable[None]]


class EventDispatcher:
    """Decodes, dedupes and dispatches bus messages.

    The event id is recorded before the handler runs: a handler that fails
    is logged and its event is not retried, matching the fire-and-forget
    delivery of the bus itself.
    """

    def __init__(self, session_factory: SessionFactory, handlers: Mapping[str, Handler]):
        self._session_factory = session_factory
        self._handlers = dict(handlers)

    @property
    def channels(self) -> list[str]:
        return list(self._handlers)

    async def _claim_event(self, event_id: str, channel: str) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        insert(ProcessedEvent).values(
                            event_id=event_id, channel=channel, processed_at=utcnow()
                        )
                    )
        except IntegrityError:
            return False
        return True

    async def dispatch(self, channel: str, raw: str | bytes) -> bool:
        """Handle one message; returns ``True`` when a handler ran successfully."""

        handler = self._handlers.get(channel)
        if handler is None:
            logger.bind(channel=channel).warning("bus_unknown_channel")
            return False

        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.bind(channel=channel, error=str(exc)).error("bus_message_undecodable")
            return False
        if not isinstance(payload, dict):
            logger.bind(channel=channel).error("bus_message_not_an_object")
            return False

        event_id = payload.get("eventId")
        log = logger.bind(channel=channel, event_id=event_id)
        if event_id and not await self._claim_event(str(event_id), channel):
            log.info("bus_event_duplicate_skipped")
            return False

        try:
            await handler(payload)
        except Exception:
            log.exception("bus_handler_failed")
            return False
        log.debug("bus_event_handled")
        return True

    async def run(self, bus: MessageBus, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        """Consume the bus until cancelled."""

        async with bus.subscribe(self.channels) as messages:
            logger.bind(channels=self.channels).info("bus_listener_started")
            task_status.started()
            async for message in messages:
                await self.dispatch(message.channel, message.data)
