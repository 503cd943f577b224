"""Campaign events: activation of newly created campaigns."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from campaign_broker.services.orchestrator import CampaignOrchestrator


def _campaign_id(payload: Mapping[str, Any]) -> int | None:
    raw = payload.get("campaignId", payload.get("campaign_id"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class CampaignEventConsumer:
    def __init__(self, orchestrator: CampaignOrchestrator):
        self._orchestrator = orchestrator

    async def on_created(self, payload: Mapping[str, Any]) -> None:
        campaign_id = _campaign_id(payload)
        if campaign_id is None:
            logger.bind(payload=dict(payload)).warning("campaign_event_missing_id")
            return
        await self._orchestrator.activate(campaign_id)
