"""Delivery worker: drains PENDING communication logs through the vendor."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

import anyio
from loguru import logger

from campaign_broker.core.concurrency import map_bounded
from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.errors import BatchProcessingError, DeliveryError
from campaign_broker.services.campaign_stats import CampaignStatsWriter, StatsDelta
from campaign_broker.services.delivery_log import ClaimedLog, DeliveryLogStore, DeliveryOutcome
from campaign_broker.services.vendor import VendorGateway

MISSING_RECIPIENT_ERROR = "Customer has no address for this channel"


@dataclass(slots=True)
class DeliveryTickResult:
    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    stale_released: int = 0
    campaigns: dict[int, StatsDelta] = field(default_factory=dict)

    @property
    def completed_campaigns(self) -> list[int]:
        return [campaign_id for campaign_id, delta in self.campaigns.items() if delta.completed]


class DeliveryWorker:
    """One tick claims a bounded batch, sends it and folds the results into stats."""

    def __init__(
        self,
        log_store: DeliveryLogStore,
        stats: CampaignStatsWriter,
        gateway: VendorGateway,
        settings: Settings | None = None,
    ):
        self._log_store = log_store
        self._stats = stats
        self._gateway = gateway
        self._settings = settings or default_settings

    async def run_once(self) -> DeliveryTickResult:
        result = DeliveryTickResult()
        result.stale_released = await self._log_store.release_stale_claims()

        claimed = await self._log_store.claim_pending(self._settings.CAMPAIGN_MAX_BATCH_SIZE)
        result.claimed = len(claimed)
        if not claimed:
            return result

        try:
            outcomes = await map_bounded(
                self._deliver, claimed, limit=self._settings.VENDOR_MAX_CONCURRENCY
            )
        except BaseException:
            # Nothing was recorded yet; give the batch back to later ticks.
            with anyio.CancelScope(shield=True):
                await self._log_store.release_claims(
                    [log.id for log in claimed], claimed[0].claim_token
                )
            raise

        by_campaign: defaultdict[int, list[DeliveryOutcome]] = defaultdict(list)
        for outcome in outcomes:
            by_campaign[outcome.campaign_id].append(outcome)

        for campaign_id, group in by_campaign.items():
            try:
                delta = await self._stats.record_outcomes(campaign_id, group)
            except Exception:
                # Logs stay PROCESSING and return to the queue once their claim goes stale.
                logger.bind(campaign_id=campaign_id, logs=len(group)).exception(
                    "delivery_stats_write_failed"
                )
                continue
            result.campaigns[campaign_id] = delta
            result.delivered += delta.delivered
            result.failed += delta.failed

        logger.bind(
            claimed=result.claimed,
            delivered=result.delivered,
            failed=result.failed,
            campaigns=len(by_campaign),
        ).info("delivery_tick_completed")
        return result

    async def _deliver(self, log: ClaimedLog) -> DeliveryOutcome:
        if not log.recipient.strip():
            logger.bind(log_id=log.id, campaign_id=log.campaign_id).warning(
                "delivery_recipient_missing"
            )
            return DeliveryOutcome(
                log.id, log.campaign_id, success=False, error=MISSING_RECIPIENT_ERROR
            )

        timeout = self._settings.VENDOR_SEND_TIMEOUT_SEC
        try:
            with anyio.fail_after(timeout):
                sent = await self._gateway.send(str(log.id), log.recipient, log.message)
        except TimeoutError:
            error = DeliveryError(f"Vendor send timed out after {timeout}s")
            logger.bind(log_id=log.id, campaign_id=log.campaign_id).warning("delivery_timed_out")
            return DeliveryOutcome(log.id, log.campaign_id, success=False, error=str(error))
        except Exception as exc:
            error = BatchProcessingError(log.id, exc)
            logger.bind(log_id=log.id, campaign_id=log.campaign_id).opt(exception=exc).warning(
                "delivery_log_processing_failed"
            )
            return DeliveryOutcome(log.id, log.campaign_id, success=False, error=str(error))

        if not sent.success:
            return DeliveryOutcome(
                log.id, log.campaign_id, success=False, error=sent.error or "Unknown vendor error"
            )
        metadata = {"vendorMessageId": sent.vendor_message_id} if sent.vendor_message_id else {}
        return DeliveryOutcome(log.id, log.campaign_id, success=True, metadata=metadata)
