"""Fire-and-forget publish/subscribe over Redis or an in-process fan-out."""

from __future__ import annotations

import json
import math
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Mapping

import anyio
import redis.asyncio as redis
from anyio.streams.memory import MemoryObjectSendStream
from loguru import logger

CUSTOMER_CREATED = "customer.created"
CUSTOMER_UPDATED = "customer.updated"
CUSTOMER_DELETED = "customer.deleted"
CUSTOMER_BULK_CREATE = "customer.bulk.create"
CAMPAIGN_CREATED = "campaign.created"
DELIVERY_RECEIPT = "delivery.receipt"
EVENT_CALLBACK = "event.callback"

ALL_CHANNELS = (
    CUSTOMER_CREATED,
    CUSTOMER_UPDATED,
    CUSTOMER_DELETED,
    CUSTOMER_BULK_CREATE,
    CAMPAIGN_CREATED,
    DELIVERY_RECEIPT,
    EVENT_CALLBACK,
)


@dataclass(frozen=True, slots=True)
class BusMessage:
    channel: str
    data: str


def build_envelope(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``payload`` and stamp ``timestamp`` and ``eventId`` when absent."""

    envelope = dict(payload)
    envelope.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    envelope.setdefault("eventId", uuid.uuid4().hex)
    return envelope


class MessageBus(ABC):
    """Publish returns the receiver count; nobody listening means the message is lost."""

    async def publish(self, channel: str, payload: Mapping[str, Any]) -> int:
        envelope = build_envelope(payload)
        receivers = await self._publish(channel, json.dumps(envelope, default=str))
        log = logger.bind(channel=channel, event_id=envelope["eventId"], receivers=receivers)
        if receivers == 0:
            log.warning("bus_message_unrouted")
        else:
            log.debug("bus_message_published")
        return receivers

    @abstractmethod
    async def _publish(self, channel: str, data: str) -> int: ...

    @abstractmethod
    def subscribe(self, channels: Iterable[str]) -> Any:
        """Async context manager yielding an async iterator of ``BusMessage``."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class LocalMessageBus(MessageBus):
    """In-process bus used by tests and single-process runs."""

    def __init__(self) -> None:
        self._subscribers: defaultdict[str, set[MemoryObjectSendStream[BusMessage]]] = defaultdict(
            set
        )

    async def _publish(self, channel: str, data: str) -> int:
        receivers = 0
        for stream in list(self._subscribers.get(channel, ())):
            try:
                stream.send_nowait(BusMessage(channel, data))
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._subscribers[channel].discard(stream)
                continue
            receivers += 1
        return receivers

    @asynccontextmanager
    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[AsyncIterator[BusMessage]]:
        channels = list(channels)
        send_stream, receive_stream = anyio.create_memory_object_stream[BusMessage](math.inf)
        for channel in channels:
            self._subscribers[channel].add(send_stream)
        try:
            async with receive_stream:
                yield receive_stream
        finally:
            for channel in channels:
                self._subscribers[channel].discard(send_stream)
            send_stream.close()


class RedisMessageBus(MessageBus):
    def __init__(self, url: str):
        self._client = redis.from_url(url, encoding="utf-8", decode_responses=True)

    async def _publish(self, channel: str, data: str) -> int:
        return int(await self._client.publish(channel, data))

    @asynccontextmanager
    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[AsyncIterator[BusMessage]]:
        channels = list(channels)
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(*channels)
        logger.bind(channels=channels).info("bus_subscribed")

        async def _messages() -> AsyncIterator[BusMessage]:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield BusMessage(message["channel"], message["data"])

        try:
            yield _messages()
        finally:
            await pubsub.unsubscribe(*channels)
            await pubsub.aclose()

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


def build_message_bus(url: str) -> MessageBus:
    if url.startswith("memory://"):
        return LocalMessageBus()
    return RedisMessageBus(url)
