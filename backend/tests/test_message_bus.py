import json

import anyio
import pytest

from campaign_broker.bus.message_bus import (
    LocalMessageBus,
    RedisMessageBus,
    build_envelope,
    build_message_bus,
)


def test_envelope_adds_timestamp_and_event_id():
    envelope = build_envelope({"campaignId": 7})

    assert envelope["campaignId"] == 7
    assert envelope["timestamp"]
    assert len(envelope["eventId"]) == 32


def test_envelope_keeps_caller_values():
    envelope = build_envelope({"eventId": "abc", "timestamp": "2024-01-01T00:00:00+00:00"})

    assert envelope == {"eventId": "abc", "timestamp": "2024-01-01T00:00:00+00:00"}


def test_build_message_bus_picks_backend():
    assert isinstance(build_message_bus("memory://"), LocalMessageBus)
    assert isinstance(build_message_bus("redis://localhost:6379/0"), RedisMessageBus)


@pytest.mark.anyio
async def test_publish_without_subscribers_returns_zero():
    bus = LocalMessageBus()

    assert await bus.publish("campaign.created", {"campaignId": 1}) == 0


@pytest.mark.anyio
async def test_subscribers_receive_their_channels_only():
    bus = LocalMessageBus()

    async with bus.subscribe(["a"]) as first, bus.subscribe(["a", "b"]) as second:
        assert await bus.publish("a", {"n": 1}) == 2
        assert await bus.publish("b", {"n": 2}) == 1

        with anyio.fail_after(1):
            got_first = await first.receive()
            got_second = [await second.receive(), await second.receive()]

    assert json.loads(got_first.data)["n"] == 1
    assert [message.channel for message in got_second] == ["a", "b"]
    assert await bus.publish("a", {"n": 3}) == 0
