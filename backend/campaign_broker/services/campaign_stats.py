"""Campaign statistics: additive counters, percentages and completion."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.core.db_retry import with_db_retry
from campaign_broker.core.errors import CampaignNotFoundError
from campaign_broker.models.campaign import Campaign, CampaignStatus
from campaign_broker.models.communication_log import CommunicationLog, LogStatus
from campaign_broker.services.delivery_log import DeliveryLogStore, DeliveryOutcome

# Campaigns share a fixed pool of locks, keyed by id modulo the pool size.
LOCK_STRIPES = 64


@dataclass(slots=True)
class StatsDelta:
    campaign_id: int
    delivered: int = 0
    failed: int = 0
    completed: bool = False

    @property
    def processed(self) -> int:
        return self.delivered + self.failed


def _percentage(column):
    return case(
        (Campaign.audience_size > 0, func.round(column * 100.0 / Campaign.audience_size, 2)),
        else_=0.0,
    )


class CampaignStatsWriter:
    """Applies delivery outcomes to campaign counters.

    Counters only move through SQL increments, never read-modify-write, and
    only for logs whose terminal transition this writer performed. Within a
    process, writes for the same campaign are serialized by a striped lock.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        log_store: DeliveryLogStore,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._log_store = log_store
        self._settings = settings or default_settings
        self._locks = tuple(asyncio.Lock() for _ in range(LOCK_STRIPES))

    def lock_for(self, campaign_id: int) -> asyncio.Lock:
        return self._locks[campaign_id % LOCK_STRIPES]

    async def record_outcomes(
        self, campaign_id: int, outcomes: Iterable[DeliveryOutcome]
    ) -> StatsDelta:
        """Transition logs and fold the winners into the campaign counters.

        Log transitions and the counter update commit together, so a log is
        counted exactly when it becomes terminal.
        """

        outcomes = list(outcomes)

        async def _apply() -> StatsDelta:
            delta = StatsDelta(campaign_id=campaign_id)
            async with self._session_factory() as session:
                async with session.begin():
                    for outcome in outcomes:
                        if not await self._log_store.transition(session, outcome):
                            continue
                        if outcome.success:
                            delta.delivered += 1
                        else:
                            delta.failed += 1
                    if delta.processed:
                        await self._increment(session, campaign_id, delta.delivered, delta.failed)
                    delta.completed = await self._complete_if_done(session, campaign_id)
            return delta

        async with self.lock_for(campaign_id):
            delta = await with_db_retry(_apply, settings=self._settings)

        logger.bind(
            campaign_id=campaign_id,
            delivered=delta.delivered,
            failed=delta.failed,
            skipped=len(outcomes) - delta.processed,
        ).info("campaign_stats_applied")
        if delta.completed:
            logger.bind(campaign_id=campaign_id).info("campaign_completed")
        return delta

    async def apply(self, campaign_id: int, delivered: int, failed: int) -> StatsDelta:
        """Add raw counts to a campaign without touching any log."""

        async def _apply() -> StatsDelta:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._increment(session, campaign_id, delivered, failed)
                    completed = await self._complete_if_done(session, campaign_id)
            return StatsDelta(campaign_id, delivered, failed, completed)

        async with self.lock_for(campaign_id):
            return await with_db_retry(_apply, settings=self._settings)

    async def check_completion(self, campaign_id: int) -> bool:
        """Complete the campaign if every resolved recipient is terminal."""

        async def _check() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._complete_if_done(session, campaign_id)

        async with self.lock_for(campaign_id):
            completed = await with_db_retry(_check, settings=self._settings)
        if completed:
            logger.bind(campaign_id=campaign_id).info("campaign_completed")
        return completed

    async def reconcile(self, campaign_id: int) -> Campaign:
        """Recompute counters from the campaign's logs.

        Used to repair drift after a crash between a send and its stats write.
        """

        async def _reconcile() -> None:
            async with self._session_factory() as session:
                async with session.begin():
                    campaign = await session.get(Campaign, campaign_id)
                    if campaign is None:
                        raise CampaignNotFoundError(campaign_id)
                    rows = (
                        await session.execute(
                            select(CommunicationLog.status, func.count(CommunicationLog.id))
                            .where(CommunicationLog.campaign_id == campaign_id)
                            .group_by(CommunicationLog.status)
                        )
                    ).all()
                    counts = {status: int(total) for status, total in rows}
                    delivered = counts.get(LogStatus.SENT.value, 0)
                    failed = counts.get(LogStatus.FAILED.value, 0)
                    pending = counts.get(LogStatus.PENDING.value, 0) + counts.get(
                        LogStatus.PROCESSING.value, 0
                    )
                    await session.execute(
                        update(Campaign)
                        .where(Campaign.id == campaign_id)
                        .values(
                            stats_delivered=delivered,
                            stats_failed=failed,
                            stats_pending=pending,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await self._recompute_percentages(session, campaign_id)
                    await self._complete_if_done(session, campaign_id)

        async with self.lock_for(campaign_id):
            await with_db_retry(_reconcile, settings=self._settings)

        async with self._session_factory() as session:
            campaign = await session.get(Campaign, campaign_id)
        logger.bind(campaign_id=campaign_id, stats=campaign.stats).info("campaign_stats_reconciled")
        return campaign

    async def _increment(
        self, session: AsyncSession, campaign_id: int, delivered: int, failed: int
    ) -> None:
        await session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(
                stats_delivered=Campaign.stats_delivered + delivered,
                stats_failed=Campaign.stats_failed + failed,
                stats_pending=Campaign.stats_pending - (delivered + failed),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self._recompute_percentages(session, campaign_id)

    async def _recompute_percentages(self, session: AsyncSession, campaign_id: int) -> None:
        # Separate statement: MySQL evaluates SET assignments left to right.
        await session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(
                delivered_percentage=_percentage(Campaign.stats_delivered),
                failed_percentage=_percentage(Campaign.stats_failed),
            )
            .execution_options(synchronize_session=False)
        )

    async def _complete_if_done(self, session: AsyncSession, campaign_id: int) -> bool:
        result = await session.execute(
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.status == CampaignStatus.ACTIVE.value,
                Campaign.audience_resolved_at.is_not(None),
                Campaign.stats_delivered + Campaign.stats_failed >= Campaign.audience_size,
            )
            .values(status=CampaignStatus.COMPLETED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
