from datetime import datetime, timedelta, timezone

import anyio
import pytest
from sqlalchemy import delete

from campaign_broker.bus.message_bus import CAMPAIGN_CREATED
from campaign_broker.core.errors import (
    AudienceResolutionError,
    InvalidRuleError,
    SegmentNotFoundError,
)
from campaign_broker.models.campaign import CampaignStatus
from campaign_broker.models.segment import Segment
from factories import HIGH_SPENDERS, add_customers, create_active_campaign, logs_for

NOBODY = {"conditionType": "AND", "conditions": [
    {"field": "totalSpend", "operator": "greaterThan", "value": 10**9},
]}


@pytest.mark.anyio
async def test_requires_exactly_one_audience_source(container, customers):
    with pytest.raises(AudienceResolutionError):
        await container.orchestrator.create_campaign(name="x", message="m")
    segment = await container.segments.create(name="s", rule_set=HIGH_SPENDERS)
    with pytest.raises(AudienceResolutionError):
        await container.orchestrator.create_campaign(
            name="x", message="m", segment_id=segment.id, custom_rules=HIGH_SPENDERS
        )


@pytest.mark.anyio
async def test_invalid_custom_rules_rejected_at_creation(container):
    with pytest.raises(InvalidRuleError):
        await container.orchestrator.create_campaign(
            name="x",
            message="m",
            custom_rules={"conditionType": "AND", "conditions": [{"field": "name"}]},
        )


@pytest.mark.anyio
async def test_unknown_segment_rejected_at_creation(container):
    with pytest.raises(SegmentNotFoundError):
        await container.orchestrator.create_campaign(name="x", message="m", segment_id=42)


@pytest.mark.anyio
async def test_segment_campaign_seeds_audience_size(container, customers):
    segment = await container.segments.create(name="s", rule_set=HIGH_SPENDERS)

    campaign = await container.orchestrator.create_campaign(
        name="x", message="m", segment_id=segment.id
    )

    assert campaign.status == CampaignStatus.ACTIVE.value
    assert campaign.audience_size == 2
    assert campaign.sent_at is not None


@pytest.mark.anyio
async def test_immediate_campaign_is_published(container, customers):
    async with container.bus.subscribe([CAMPAIGN_CREATED]) as messages:
        campaign = await container.orchestrator.create_campaign(
            name="x", message="m", custom_rules=HIGH_SPENDERS
        )
        with anyio.fail_after(1):
            message = await messages.receive()

    assert message.channel == CAMPAIGN_CREATED
    assert f'"campaignId": {campaign.id}' in message.data


@pytest.mark.anyio
async def test_future_campaign_stays_draft(container, customers):
    scheduled = datetime.now(timezone.utc) + timedelta(hours=1)

    campaign = await container.orchestrator.create_campaign(
        name="x", message="m", custom_rules=HIGH_SPENDERS, scheduled_at=scheduled
    )

    assert campaign.status == CampaignStatus.DRAFT.value
    assert campaign.sent_at is None
    assert campaign.scheduled_at.tzinfo is None
    assert await container.orchestrator.activate(campaign.id) is None
    assert await logs_for(container.session_factory, campaign.id) == []


@pytest.mark.anyio
async def test_activation_writes_personalized_pending_logs(container, customers):
    await add_customers(container.session_factory, {"name": "", "email": "anon@example.com",
                                                    "total_spend": 30000})

    campaign = await create_active_campaign(container, message="Hi {{name}}, thanks!")

    logs = await logs_for(container.session_factory, campaign.id)
    assert [log.message for log in logs] == [
        "Hi Alice, thanks!",
        "Hi Bob, thanks!",
        "Hi Customer, thanks!",
    ]
    assert [log.recipient for log in logs] == [
        "alice@example.com",
        "bob@example.com",
        "anon@example.com",
    ]
    assert {log.status for log in logs} == {"PENDING"}
    assert campaign.audience_size == 3
    assert campaign.stats["pending"] == 3
    assert campaign.audience_resolved_at is not None


@pytest.mark.anyio
async def test_activation_skips_inactive_customers(container, customers):
    vip = {"conditionType": "AND", "conditions": [
        {"field": "tags", "operator": "contains", "value": "vip"},
    ]}

    campaign = await create_active_campaign(container, rules=vip)

    assert campaign.audience_size == 1


@pytest.mark.anyio
async def test_zero_audience_completes_immediately(container, customers):
    campaign = await create_active_campaign(container, rules=NOBODY)

    assert campaign.status == CampaignStatus.COMPLETED.value
    assert campaign.audience_size == 0
    assert campaign.completed_at is not None
    assert (await container.delivery_worker.run_once()).claimed == 0


@pytest.mark.anyio
async def test_second_activation_is_a_noop(container, customers):
    campaign = await create_active_campaign(container)

    assert await container.orchestrator.activate(campaign.id) is None
    assert len(await logs_for(container.session_factory, campaign.id)) == 2


@pytest.mark.anyio
async def test_concurrent_activation_resolves_once(container, customers):
    campaign = await container.orchestrator.create_campaign(
        name="x", message="m", custom_rules=HIGH_SPENDERS
    )
    results = []

    async def _activate():
        results.append(await container.orchestrator.activate(campaign.id))

    async with anyio.create_task_group() as tg:
        tg.start_soon(_activate)
        tg.start_soon(_activate)

    assert sum(result is not None for result in results) == 1
    assert len(await logs_for(container.session_factory, campaign.id)) == 2


@pytest.mark.anyio
async def test_missing_segment_fails_campaign(container, customers):
    segment = await container.segments.create(name="s", rule_set=HIGH_SPENDERS)
    campaign = await container.orchestrator.create_campaign(
        name="x", message="m", segment_id=segment.id
    )
    async with container.session_factory() as session:
        async with session.begin():
            await session.execute(delete(Segment).where(Segment.id == segment.id))

    assert await container.orchestrator.activate(campaign.id) is None

    failed = await container.orchestrator.get(campaign.id)
    assert failed.status == CampaignStatus.FAILED.value
    assert "Segment not found" in failed.failure_reason
    assert await logs_for(container.session_factory, campaign.id) == []
