"""Promotes due Draft campaigns to Active."""

from __future__ import annotations

from datetime import datetime

from loguru import logger
from sqlalchemy import select, update

from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.models.campaign import Campaign, CampaignStatus
from campaign_broker.services.orchestrator import CampaignOrchestrator


class ScheduledCampaignTrigger:
    """Flips each due campaign exactly once, even with overlapping ticks.

    The Draft -> Active flip is a conditional UPDATE; only the tick whose
    update changed the row goes on to activate the campaign.
    """

    def __init__(self, session_factory: SessionFactory, orchestrator: CampaignOrchestrator):
        self._session_factory = session_factory
        self._orchestrator = orchestrator

    async def _due_campaign_ids(self, now: datetime) -> list[int]:
        async with self._session_factory() as session:
            return list(
                (
                    await session.scalars(
                        select(Campaign.id)
                        .where(
                            Campaign.status == CampaignStatus.DRAFT.value,
                            Campaign.scheduled_at.is_not(None),
                            Campaign.scheduled_at <= now,
                        )
                        .order_by(Campaign.scheduled_at, Campaign.id)
                    )
                ).all()
            )

    async def _flip(self, campaign_id: int, now: datetime) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Campaign)
                    .where(
                        Campaign.id == campaign_id,
                        Campaign.status == CampaignStatus.DRAFT.value,
                    )
                    .values(status=CampaignStatus.ACTIVE.value, sent_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def run_once(self, now: datetime | None = None) -> list[int]:
        """Returns the ids of campaigns this tick activated."""

        now = now or utcnow()
        activated: list[int] = []
        for campaign_id in await self._due_campaign_ids(now):
            if not await self._flip(campaign_id, now):
                continue
            activated.append(campaign_id)
            logger.bind(campaign_id=campaign_id).info("scheduled_campaign_triggered")
            try:
                await self._orchestrator.activate(campaign_id)
            except Exception:
                logger.bind(campaign_id=campaign_id).exception("scheduled_activation_failed")
        return activated
