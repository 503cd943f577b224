import pytest
from sqlalchemy import update

from campaign_broker.models.campaign import Campaign, CampaignStatus
from campaign_broker.models.communication_log import CommunicationLog
from campaign_broker.services.campaign_stats import LOCK_STRIPES
from campaign_broker.services.delivery_log import DeliveryOutcome
from factories import create_active_campaign, logs_for


@pytest.mark.anyio
async def test_outcome_for_terminal_log_is_not_counted(container, customers):
    campaign = await create_active_campaign(container)
    log = (await logs_for(container.session_factory, campaign.id))[0]
    outcome = DeliveryOutcome(log.id, campaign.id, success=True)

    first = await container.stats.record_outcomes(campaign.id, [outcome])
    replay = await container.stats.record_outcomes(campaign.id, [outcome])

    assert (first.delivered, replay.delivered) == (1, 0)
    current = await container.orchestrator.get(campaign.id)
    assert (current.stats_delivered, current.stats_pending) == (1, 1)


@pytest.mark.anyio
async def test_reconcile_repairs_drift(container, customers):
    campaign = await create_active_campaign(container)
    await container.delivery_worker.run_once()
    async with container.session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Campaign)
                .where(Campaign.id == campaign.id)
                .values(stats_delivered=0, stats_pending=2, status=CampaignStatus.ACTIVE.value)
            )

    repaired = await container.stats.reconcile(campaign.id)

    assert repaired.stats["delivered"] == 2
    assert repaired.stats["pending"] == 0
    assert repaired.delivered_percentage == 100.0
    assert repaired.status == CampaignStatus.COMPLETED.value


@pytest.mark.anyio
async def test_reconcile_counts_in_flight_logs_as_pending(container, customers):
    campaign = await create_active_campaign(container)
    async with container.session_factory() as session:
        async with session.begin():
            await session.execute(update(CommunicationLog).values(status="PROCESSING"))

    repaired = await container.stats.reconcile(campaign.id)

    assert repaired.stats_pending == 2
    assert repaired.status == CampaignStatus.ACTIVE.value


@pytest.mark.usefixtures("anyio_backend")
def test_campaign_locks_come_from_a_fixed_pool(container):
    stats = container.stats

    locks = {id(stats.lock_for(campaign_id)) for campaign_id in range(1, 5000)}

    assert len(locks) == LOCK_STRIPES
    assert stats.lock_for(7) is stats.lock_for(7 + LOCK_STRIPES)
    assert stats.lock_for(7) is not stats.lock_for(8)
