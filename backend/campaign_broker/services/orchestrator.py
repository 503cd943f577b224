"""Campaign lifecycle: creation, activation, audience fan-out and failure."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import update

from campaign_broker.bus.message_bus import CAMPAIGN_CREATED, MessageBus
from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.core.errors import (
    AudienceResolutionError,
    CampaignNotFoundError,
    InvalidRuleError,
    SegmentNotFoundError,
)
from campaign_broker.models.campaign import Campaign, CampaignStatus
from campaign_broker.models.customer import Customer
from campaign_broker.models.segment import Segment
from campaign_broker.services.audience import AudienceResolver
from campaign_broker.services.campaign_stats import CampaignStatsWriter
from campaign_broker.services.delivery_log import DeliveryLogStore
from campaign_broker.services.rule_compiler import validate_rule_set

NAME_PLACEHOLDER = "{{name}}"
DEFAULT_CUSTOMER_NAME = "Customer"


def personalize(template: str, customer: Customer) -> str:
    return template.replace(NAME_PLACEHOLDER, customer.name or DEFAULT_CUSTOMER_NAME)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(slots=True)
class ActivationResult:
    campaign_id: int
    audience_size: int
    completed: bool


class CampaignOrchestrator:
    """Drives a campaign from creation to a fully fanned-out delivery queue.

    Status only moves forward: Draft -> Active -> Completed, or Active ->
    Failed when the audience cannot be resolved.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        resolver: AudienceResolver,
        log_store: DeliveryLogStore,
        stats: CampaignStatsWriter,
        bus: MessageBus,
        settings: Settings | None = None,
        *,
        recipient_field: str = "email",
    ):
        self._session_factory = session_factory
        self._resolver = resolver
        self._log_store = log_store
        self._stats = stats
        self._bus = bus
        self._settings = settings or default_settings
        self._recipient_field = recipient_field

    async def get(self, campaign_id: int) -> Campaign:
        async with self._session_factory() as session:
            campaign = await session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def create_campaign(
        self,
        *,
        name: str,
        message: str,
        description: str | None = None,
        segment_id: int | None = None,
        custom_rules: Mapping[str, Any] | None = None,
        scheduled_at: datetime | None = None,
    ) -> Campaign:
        """Validate and persist a campaign.

        Immediate campaigns are published on ``campaign.created`` for
        activation; future ones stay Draft for the scheduled trigger.
        """

        if (segment_id is None) == (custom_rules is None):
            raise AudienceResolutionError(
                "Exactly one of segment_id or custom_rules must be provided"
            )

        audience_size = 0
        if custom_rules is not None:
            validate_rule_set(custom_rules, strict=self._settings.RULES_STRICT_OPERATORS)
            custom_rules = dict(custom_rules)
            audience_size = await self._resolver.count(custom_rules, active_only=True)

        now = utcnow()
        scheduled_at = _naive_utc(scheduled_at)
        is_scheduled = scheduled_at is not None and scheduled_at > now

        async with self._session_factory() as session:
            async with session.begin():
                if segment_id is not None:
                    segment = await session.get(Segment, segment_id)
                    if segment is None:
                        raise SegmentNotFoundError(segment_id)
                    audience_size = segment.audience_size
                campaign = Campaign(
                    name=name,
                    description=description,
                    message=message,
                    segment_id=segment_id,
                    custom_rules=custom_rules,
                    audience_size=audience_size,
                    scheduled_at=scheduled_at,
                    status=(
                        CampaignStatus.DRAFT.value if is_scheduled else CampaignStatus.ACTIVE.value
                    ),
                    sent_at=None if is_scheduled else now,
                )
                session.add(campaign)
            campaign_id = campaign.id

        logger.bind(
            campaign_id=campaign_id, status=campaign.status, scheduled_at=scheduled_at
        ).info("campaign_created")
        if not is_scheduled:
            await self._bus.publish(CAMPAIGN_CREATED, {"campaignId": campaign_id})
        return await self.get(campaign_id)

    async def activate(self, campaign_id: int) -> ActivationResult | None:
        """Resolve the audience of an Active campaign and queue its deliveries.

        Returns ``None`` when the campaign is not Active or was already
        resolved, which makes repeated ``campaign.created`` events harmless.
        """

        log = logger.bind(campaign_id=campaign_id)
        campaign = await self.get(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE.value or campaign.audience_resolved_at:
            log.bind(status=campaign.status).info("campaign_activation_skipped")
            return None

        try:
            rule_set = await self._rule_source(campaign)
        except (AudienceResolutionError, InvalidRuleError) as exc:
            await self._fail(campaign_id, str(exc))
            return None

        try:
            count = await self._fan_out(campaign, rule_set)
        except InvalidRuleError as exc:
            await self._fail(campaign_id, str(exc))
            return None
        if count is None:
            log.info("campaign_activation_skipped")
            return None

        completed = await self._stats.check_completion(campaign_id)
        log.bind(audience_size=count, completed=completed).info("campaign_activated")
        return ActivationResult(campaign_id=campaign_id, audience_size=count, completed=completed)

    async def _rule_source(self, campaign: Campaign) -> Mapping[str, Any]:
        if campaign.segment_id is not None:
            async with self._session_factory() as session:
                segment = await session.get(Segment, campaign.segment_id)
            if segment is None:
                raise SegmentNotFoundError(campaign.segment_id)
            return segment.rules
        if campaign.custom_rules:
            return campaign.custom_rules
        raise AudienceResolutionError("Campaign has neither a segment nor custom rules")

    async def _fan_out(self, campaign: Campaign, rule_set: Mapping[str, Any]) -> int | None:
        """Claim the campaign's resolution and write one PENDING log per customer.

        The claim, the logs and the audience counters commit together, so
        workers never see a partially fanned-out campaign. Customers missing
        the address the gateway needs get an empty recipient, which the
        worker fails without calling the vendor.
        """

        batch_size = max(1, self._settings.LOG_INSERT_BATCH_SIZE)
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                claimed = await session.execute(
                    update(Campaign)
                    .where(
                        Campaign.id == campaign.id,
                        Campaign.status == CampaignStatus.ACTIVE.value,
                        Campaign.audience_resolved_at.is_(None),
                    )
                    .values(audience_resolved_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    return None

                total = 0
                batch: list[dict[str, Any]] = []
                async for customer in self._resolver.iter_customers(
                    rule_set, active_only=True, chunk_size=batch_size, now=now
                ):
                    batch.append(
                        {
                            "customer_id": customer.id,
                            "recipient": getattr(customer, self._recipient_field) or "",
                            "message": personalize(campaign.message, customer),
                        }
                    )
                    if len(batch) >= batch_size:
                        total += await self._log_store.insert_pending(session, campaign.id, batch)
                        batch = []
                total += await self._log_store.insert_pending(session, campaign.id, batch)

                await session.execute(
                    update(Campaign)
                    .where(Campaign.id == campaign.id)
                    .values(
                        audience_size=total,
                        stats_pending=total,
                        stats_delivered=0,
                        stats_failed=0,
                        delivered_percentage=0.0,
                        failed_percentage=0.0,
                    )
                    .execution_options(synchronize_session=False)
                )
        return total

    async def _fail(self, campaign_id: int, reason: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Campaign)
                    .where(
                        Campaign.id == campaign_id,
                        Campaign.status == CampaignStatus.ACTIVE.value,
                    )
                    .values(
                        status=CampaignStatus.FAILED.value,
                        failure_reason=reason,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.bind(campaign_id=campaign_id, reason=reason).error("campaign_activation_failed")
