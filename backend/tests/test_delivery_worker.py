from datetime import timedelta

import anyio
import pytest
import requests
from sqlalchemy import update

from campaign_broker.bus.message_bus import LocalMessageBus
from campaign_broker.container import build_container
from campaign_broker.core.db import utcnow
from campaign_broker.models.campaign import CampaignStatus
from campaign_broker.models.communication_log import CommunicationLog
from campaign_broker.services.vendor import HttpVendorGateway
from campaign_broker.workers.delivery import MISSING_RECIPIENT_ERROR
from factories import add_customers, create_active_campaign, logs_for

ACTIVE_CUSTOMERS = {"conditionType": "AND", "conditions": [
    {"field": "isActive", "operator": "equals", "value": True},
]}


@pytest.mark.anyio
async def test_reliable_vendor_completes_campaign(container, customers):
    campaign = await create_active_campaign(container, rules=ACTIVE_CUSTOMERS)
    assert campaign.audience_size == 3

    tick = await container.delivery_worker.run_once()

    assert (tick.claimed, tick.delivered, tick.failed) == (3, 3, 0)
    assert tick.completed_campaigns == [campaign.id]
    done = await container.orchestrator.get(campaign.id)
    assert done.status == CampaignStatus.COMPLETED.value
    assert done.stats == {
        "delivered": 3,
        "failed": 0,
        "pending": 0,
        "deliveredPercentage": 100.0,
        "failedPercentage": 0.0,
    }
    logs = await logs_for(container.session_factory, campaign.id)
    assert {log.status for log in logs} == {"SENT"}
    assert all(log.sent_at is not None for log in logs)
    assert logs[0].meta == {"vendorMessageId": "msg_alice"}


@pytest.mark.anyio
async def test_failing_vendor_still_completes_campaign(container, customers, gateway):
    gateway.fail_all("Recipient opted out")
    campaign = await create_active_campaign(container)

    tick = await container.delivery_worker.run_once()

    assert (tick.delivered, tick.failed) == (0, 2)
    done = await container.orchestrator.get(campaign.id)
    assert done.status == CampaignStatus.COMPLETED.value
    assert done.stats_failed == 2
    assert done.failed_percentage == 100.0
    logs = await logs_for(container.session_factory, campaign.id)
    assert [log.error_message for log in logs] == ["Recipient opted out"] * 2


@pytest.mark.anyio
async def test_batches_are_bounded(container, customers, monkeypatch):
    monkeypatch.setattr(container.settings, "CAMPAIGN_MAX_BATCH_SIZE", 2)
    campaign = await create_active_campaign(container, rules=ACTIVE_CUSTOMERS)

    first = await container.delivery_worker.run_once()
    partial = await container.orchestrator.get(campaign.id)
    second = await container.delivery_worker.run_once()

    assert (first.claimed, second.claimed) == (2, 1)
    assert partial.status == CampaignStatus.ACTIVE.value
    assert partial.stats_pending == 1
    assert partial.delivered_percentage == pytest.approx(66.67)
    assert (await container.orchestrator.get(campaign.id)).status == CampaignStatus.COMPLETED.value


@pytest.mark.anyio
async def test_concurrent_ticks_never_double_send(container, customers, gateway):
    gateway.delay = 0.05
    campaign = await create_active_campaign(container, rules=ACTIVE_CUSTOMERS)
    ticks = []

    async def _tick():
        ticks.append(await container.delivery_worker.run_once())

    async with anyio.create_task_group() as tg:
        tg.start_soon(_tick)
        tg.start_soon(_tick)

    sent_ids = [call[0] for call in gateway.calls]
    assert len(sent_ids) == len(set(sent_ids)) == 3
    assert sum(tick.claimed for tick in ticks) == 3
    done = await container.orchestrator.get(campaign.id)
    assert (done.stats_delivered, done.stats_pending) == (3, 0)


@pytest.mark.anyio
async def test_exception_marks_only_that_log_failed(container, customers, gateway):
    def _explode(recipient):
        raise RuntimeError("connection reset by peer")

    gateway.by_recipient["bob@example.com"] = _explode
    campaign = await create_active_campaign(container, rules=ACTIVE_CUSTOMERS)

    tick = await container.delivery_worker.run_once()

    assert (tick.delivered, tick.failed) == (2, 1)
    logs = {log.recipient: log for log in await logs_for(container.session_factory, campaign.id)}
    assert logs["bob@example.com"].status == "FAILED"
    assert logs["bob@example.com"].error_message == "connection reset by peer"
    assert logs["alice@example.com"].status == "SENT"


@pytest.mark.anyio
async def test_slow_send_times_out_as_failed(container, customers, gateway, monkeypatch):
    monkeypatch.setattr(container.settings, "VENDOR_SEND_TIMEOUT_SEC", 0.05)
    gateway.delays["alice@example.com"] = 1.0
    campaign = await create_active_campaign(container)

    tick = await container.delivery_worker.run_once()

    assert (tick.delivered, tick.failed) == (1, 1)
    logs = {log.recipient: log for log in await logs_for(container.session_factory, campaign.id)}
    assert logs["alice@example.com"].status == "FAILED"
    assert "timed out" in logs["alice@example.com"].error_message


@pytest.mark.anyio
async def test_stale_claims_are_released_and_retried(container, customers):
    campaign = await create_active_campaign(container)
    abandoned = await container.log_store.claim_pending(10)
    assert len(abandoned) == 2
    async with container.session_factory() as session:
        async with session.begin():
            await session.execute(
                update(CommunicationLog).values(claimed_at=utcnow() - timedelta(hours=1))
            )

    tick = await container.delivery_worker.run_once()

    assert tick.stale_released == 2
    assert tick.delivered == 2
    assert (await container.orchestrator.get(campaign.id)).status == CampaignStatus.COMPLETED.value


@pytest.mark.anyio
async def test_fresh_claims_are_not_stolen(container, customers):
    await create_active_campaign(container)
    await container.log_store.claim_pending(10)

    tick = await container.delivery_worker.run_once()

    assert (tick.stale_released, tick.claimed) == (0, 0)


@pytest.mark.anyio
async def test_cancelled_tick_returns_claims(container, customers, gateway):
    gateway.delay = 5
    campaign = await create_active_campaign(container)

    with anyio.move_on_after(0.1):
        await container.delivery_worker.run_once()

    logs = await logs_for(container.session_factory, campaign.id)
    assert {log.status for log in logs} == {"PENDING"}
    assert all(log.claim_token is None for log in logs)


class _VendorResponse:
    status_code = 200
    content = b"{}"

    def raise_for_status(self):
        return None

    def json(self):
        return {"messages": [{"id": "wamid.1"}]}


@pytest.mark.anyio
async def test_http_vendor_receives_customer_phone(broker_settings, monkeypatch):
    posted = []

    def _post(url, json, headers, timeout):
        posted.append(json["to"])
        return _VendorResponse()

    monkeypatch.setattr(requests, "post", _post)
    gateway = HttpVendorGateway(api_base="https://vendor.test", token="secret")
    container = build_container(broker_settings, bus=LocalMessageBus(), gateway=gateway)
    await container.create_schema()
    try:
        ids = await add_customers(
            container.session_factory,
            {"name": "Alice", "total_spend": 15000, "phone": "+91 98765 43210"},
            {"name": "Bob", "total_spend": 12000},
        )
        campaign = await create_active_campaign(container)

        await container.delivery_worker.run_once()

        logs = {
            log.customer_id: log for log in await logs_for(container.session_factory, campaign.id)
        }
        assert posted == ["919876543210"]
        assert logs[ids["Alice"]].recipient == "+91 98765 43210"
        assert logs[ids["Alice"]].status == "SENT"
        assert logs[ids["Bob"]].status == "FAILED"
        assert logs[ids["Bob"]].error_message == MISSING_RECIPIENT_ERROR

        done = await container.orchestrator.get(campaign.id)
        assert done.status == CampaignStatus.COMPLETED.value
        assert (done.stats_delivered, done.stats_failed) == (1, 1)
    finally:
        await container.close()
