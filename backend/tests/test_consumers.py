import json
from datetime import datetime

import pytest
from sqlalchemy import select

from campaign_broker.bus.message_bus import (
    CAMPAIGN_CREATED,
    CUSTOMER_BULK_CREATE,
    CUSTOMER_UPDATED,
    DELIVERY_RECEIPT,
    EVENT_CALLBACK,
    build_envelope,
)
from campaign_broker.consumers.dispatcher import EventDispatcher
from campaign_broker.models.campaign import CampaignStatus
from campaign_broker.models.customer import Customer
from factories import HIGH_SPENDERS, create_active_campaign, logs_for


def _raw(payload):
    return json.dumps(build_envelope(payload))


@pytest.mark.anyio
async def test_campaign_created_event_activates(container, customers):
    campaign = await container.orchestrator.create_campaign(
        name="x", message="m", custom_rules=HIGH_SPENDERS
    )

    handled = await container.dispatcher.dispatch(
        CAMPAIGN_CREATED, _raw({"campaignId": campaign.id})
    )

    assert handled is True
    assert len(await logs_for(container.session_factory, campaign.id)) == 2


@pytest.mark.anyio
async def test_duplicate_event_ids_are_dropped(container, customers):
    campaign = await container.orchestrator.create_campaign(
        name="x", message="m", custom_rules=HIGH_SPENDERS
    )
    raw = _raw({"campaignId": campaign.id})

    assert await container.dispatcher.dispatch(CAMPAIGN_CREATED, raw) is True
    assert await container.dispatcher.dispatch(CAMPAIGN_CREATED, raw) is False


@pytest.mark.anyio
async def test_receipt_transitions_pending_log(container, customers):
    campaign = await create_active_campaign(container)
    log = (await logs_for(container.session_factory, campaign.id))[0]

    await container.dispatcher.dispatch(
        DELIVERY_RECEIPT,
        _raw({"messageId": log.id, "status": "FAILED", "errorMessage": "bounced"}),
    )

    updated = (await logs_for(container.session_factory, campaign.id))[0]
    assert updated.status == "FAILED"
    assert updated.error_message == "bounced"
    current = await container.orchestrator.get(campaign.id)
    assert (current.stats_failed, current.stats_pending) == (1, 1)


@pytest.mark.anyio
async def test_receipt_for_sent_log_only_annotates(container, customers):
    campaign = await create_active_campaign(container)
    await container.delivery_worker.run_once()
    log = (await logs_for(container.session_factory, campaign.id))[0]

    for _ in range(2):
        await container.dispatcher.dispatch(
            DELIVERY_RECEIPT,
            _raw({"messageId": log.id, "status": "DELIVERED", "metadata": {"carrier": "x"}}),
        )

    updated = (await logs_for(container.session_factory, campaign.id))[0]
    assert updated.status == "SENT"
    assert updated.delivered_at is not None
    assert updated.meta["carrier"] == "x"
    assert updated.meta["vendorMessageId"] == "msg_alice"
    current = await container.orchestrator.get(campaign.id)
    assert current.stats_delivered == 2
    assert current.status == CampaignStatus.COMPLETED.value


@pytest.mark.anyio
async def test_receipt_timestamp_becomes_delivered_at(container, customers):
    campaign = await create_active_campaign(container)
    first, second = await logs_for(container.session_factory, campaign.id)

    await container.dispatcher.dispatch(
        DELIVERY_RECEIPT,
        _raw({"messageId": first.id, "status": "DELIVERED",
              "timestamp": "2024-03-01T12:30:00+05:30"}),
    )
    await container.dispatcher.dispatch(
        DELIVERY_RECEIPT,
        _raw({"messageId": second.id, "status": "DELIVERED", "timestamp": "not a date"}),
    )

    first, second = await logs_for(container.session_factory, campaign.id)
    assert first.delivered_at == datetime(2024, 3, 1, 7, 0)
    assert second.delivered_at > datetime(2024, 3, 1, 7, 0)


@pytest.mark.anyio
async def test_late_failure_receipt_does_not_flip_sent_log(container, customers):
    campaign = await create_active_campaign(container)
    await container.delivery_worker.run_once()
    log = (await logs_for(container.session_factory, campaign.id))[0]

    await container.dispatcher.dispatch(
        DELIVERY_RECEIPT, _raw({"messageId": log.id, "status": "FAILED"})
    )

    assert (await logs_for(container.session_factory, campaign.id))[0].status == "SENT"
    assert (await container.orchestrator.get(campaign.id)).stats_failed == 0


@pytest.mark.anyio
async def test_event_callbacks_append(container, customers):
    campaign = await create_active_campaign(container)
    log = (await logs_for(container.session_factory, campaign.id))[0]

    await container.dispatcher.dispatch(
        EVENT_CALLBACK, _raw({"messageId": log.id, "eventType": "CLICKED", "url": "https://x.io"})
    )
    await container.dispatcher.dispatch(
        EVENT_CALLBACK, _raw({"messageId": log.id, "eventType": "REPLIED", "replyText": "stop"})
    )

    events = (await logs_for(container.session_factory, campaign.id))[0].meta["events"]
    assert [event["type"] for event in events] == ["CLICKED", "REPLIED"]
    assert events[0]["url"] == "https://x.io"
    assert events[1]["replyText"] == "stop"
    assert events[0]["timestamp"]
    current = await container.orchestrator.get(campaign.id)
    assert current.stats_pending == 2


@pytest.mark.anyio
async def test_customer_change_refreshes_segments(container, customers):
    segment = await container.segments.create(name="s", rule_set=HIGH_SPENDERS)
    await container.customers.bulk_upsert([{"name": "Eve", "email": "eve@example.com",
                                            "totalSpend": 99999}])

    await container.dispatcher.dispatch(CUSTOMER_UPDATED, _raw({"customerId": 5}))

    assert (await container.segments.get(segment.id)).audience_size == 3


@pytest.mark.anyio
async def test_bulk_create_upserts_by_email(container, customers):
    segment = await container.segments.create(name="s", rule_set=HIGH_SPENDERS)

    await container.dispatcher.dispatch(
        CUSTOMER_BULK_CREATE,
        _raw({"customers": [
            {"name": "Carol", "email": "CAROL@example.com", "totalSpend": 20000},
            {"name": "Frank", "email": "frank@example.com", "totalSpend": 11000,
             "tags": ["new"], "lastOrderDate": "2024-01-02T03:04:05Z"},
            {"name": "", "email": "nobody@example.com"},
            {"email": "nameless@example.com"},
        ]}),
    )

    assert (await container.segments.get(segment.id)).audience_size == 4
    result = await container.customers.bulk_upsert([{"name": "Frank", "email": "frank@example.com"}])
    assert (result.created, result.updated) == (0, 1)


@pytest.mark.anyio
async def test_bulk_upsert_skips_badly_typed_rows(container):
    rows = [
        {"name": f"Customer {i}", "email": f"c{i}@example.com", "totalSpend": i}
        for i in range(150)
    ]
    rows.insert(50, {"name": "Bad spend", "email": "bad1@example.com", "totalSpend": "abc"})
    rows.insert(120, {"name": "Bad flag", "email": "bad2@example.com", "isActive": "maybe"})

    result = await container.customers.bulk_upsert(rows)

    assert (result.created, result.updated, result.skipped) == (150, 0, 2)
    async with container.session_factory() as session:
        stored = (await session.scalars(select(Customer.email))).all()
    assert len(stored) == 150
    assert "bad1@example.com" not in stored


@pytest.mark.anyio
async def test_bulk_upsert_coerces_and_keeps_unsent_fields(container):
    await container.customers.bulk_upsert(
        [{"name": "Gina", "email": " Gina@Example.com ", "phone": 9876543210,
          "order_count": "4", "isActive": "false"}]
    )
    await container.customers.bulk_upsert([{"name": "Gina B", "email": "gina@example.com"}])

    async with container.session_factory() as session:
        gina = await session.scalar(select(Customer).where(Customer.email == "gina@example.com"))
    assert (gina.name, gina.phone, gina.order_count, gina.is_active) == (
        "Gina B", "9876543210", 4, False
    )


@pytest.mark.anyio
async def test_handler_errors_are_contained(session_factory, container):
    async def _boom(payload):
        raise RuntimeError("handler broke")

    dispatcher = EventDispatcher(session_factory, {"test.channel": _boom})

    assert await dispatcher.dispatch("test.channel", _raw({})) is False
    assert await dispatcher.dispatch("unknown.channel", _raw({})) is False
    assert await dispatcher.dispatch("test.channel", "{not json") is False
