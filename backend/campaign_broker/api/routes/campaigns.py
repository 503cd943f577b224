"""API endpoints for campaigns."""

import logging

from fastapi import APIRouter, Depends, status

from campaign_broker.api.deps import get_container, raise_http_error
from campaign_broker.container import Container
from campaign_broker.core.errors import CampaignBrokerError
from campaign_broker.schemas.campaign import CampaignCreate, CampaignOut

router = APIRouter(prefix="/campaigns", tags=["campaigns"])

logger = logging.getLogger(__name__)


@router.post("", response_model=CampaignOut, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    payload: CampaignCreate,
    container: Container = Depends(get_container),
):
    """Create a campaign; immediate ones are queued for activation on the bus."""

    try:
        campaign = await container.orchestrator.create_campaign(
            name=payload.name,
            description=payload.description,
            message=payload.message,
            segment_id=payload.segment_id,
            custom_rules=payload.custom_rules.to_rules() if payload.custom_rules else None,
            scheduled_at=payload.scheduled_at,
        )
    except CampaignBrokerError as exc:
        raise_http_error(exc)
    logger.info("Campaign %s created with status %s", campaign.id, campaign.status)
    return campaign


@router.get("/{campaign_id}", response_model=CampaignOut)
async def get_campaign(campaign_id: int, container: Container = Depends(get_container)):
    try:
        return await container.orchestrator.get(campaign_id)
    except CampaignBrokerError as exc:
        raise_http_error(exc)


@router.post("/{campaign_id}/reconcile", response_model=CampaignOut)
async def reconcile_campaign(campaign_id: int, container: Container = Depends(get_container)):
    """Rebuild the campaign's statistics from its communication logs."""

    try:
        return await container.stats.reconcile(campaign_id)
    except CampaignBrokerError as exc:
        raise_http_error(exc)
