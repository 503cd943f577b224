"""Vendor callbacks: delivery receipts and recipient interaction events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger

from campaign_broker.core.db import utcnow
from campaign_broker.models.communication_log import OPEN_LOG_STATUSES
from campaign_broker.services.campaign_stats import CampaignStatsWriter
from campaign_broker.services.delivery_log import DeliveryLogStore, DeliveryOutcome

SUCCESS_STATUSES = {"SENT", "DELIVERED"}
FAILURE_STATUSES = {"FAILED"}


def _receipt_time(value: Any) -> datetime:
    """The vendor-reported time as naive UTC, or now when absent or unparseable."""

    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return utcnow()
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return utcnow()


def _log_id(payload: Mapping[str, Any]) -> int | None:
    try:
        return int(payload.get("messageId"))
    except (TypeError, ValueError):
        return None


class DeliveryReceiptConsumer:
    """Applies vendor receipts through the same transition path as the worker.

    A receipt for a log that already reached SENT or FAILED only adds
    metadata, so replays and late receipts never change counters.
    """

    def __init__(self, log_store: DeliveryLogStore, stats: CampaignStatsWriter):
        self._log_store = log_store
        self._stats = stats

    async def on_receipt(self, payload: Mapping[str, Any]) -> None:
        log_id = _log_id(payload)
        status = str(payload.get("status") or "").upper()
        bound = logger.bind(message_id=payload.get("messageId"), status=status)
        if log_id is None or status not in SUCCESS_STATUSES | FAILURE_STATUSES:
            bound.warning("delivery_receipt_invalid")
            return

        log = await self._log_store.get(log_id)
        if log is None:
            bound.warning("delivery_receipt_unknown_log")
            return

        success = status in SUCCESS_STATUSES
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), Mapping) else {}
        now = _receipt_time(payload.get("timestamp"))
        if log.status in OPEN_LOG_STATUSES:
            delta = await self._stats.record_outcomes(
                log.campaign_id,
                [
                    DeliveryOutcome(
                        log_id=log_id,
                        campaign_id=log.campaign_id,
                        success=success,
                        error=None if success else payload.get("errorMessage"),
                        metadata=dict(metadata),
                        occurred_at=now,
                        delivered_at=now if success else None,
                    )
                ],
            )
            if delta.processed:
                bound.bind(campaign_id=log.campaign_id).info("delivery_receipt_applied")
                return

        await self._log_store.merge_metadata(
            log_id, dict(metadata), delivered_at=now if success else None
        )
        bound.bind(campaign_id=log.campaign_id).info("delivery_receipt_annotated")

    async def on_event_callback(self, payload: Mapping[str, Any]) -> None:
        log_id = _log_id(payload)
        if log_id is None:
            logger.bind(payload=dict(payload)).warning("event_callback_invalid")
            return
        event = {
            "type": payload.get("eventType") or payload.get("type"),
            "timestamp": payload.get("timestamp"),
            "url": payload.get("url"),
            "replyText": payload.get("replyText"),
        }
        if not await self._log_store.append_event(log_id, event):
            logger.bind(message_id=log_id).warning("event_callback_unknown_log")
            return
        logger.bind(message_id=log_id, event_type=event["type"]).info("event_callback_recorded")
