"""API endpoints for audience segments."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from campaign_broker.api.deps import get_container, raise_http_error
from campaign_broker.container import Container
from campaign_broker.core.errors import CampaignBrokerError
from campaign_broker.schemas.customer import CustomerOut
from campaign_broker.schemas.segment import (
    SegmentCreate,
    SegmentOut,
    SegmentPreviewOut,
    SegmentPreviewRequest,
    SegmentUpdate,
)

router = APIRouter(prefix="/segments", tags=["segments"])

logger = logging.getLogger(__name__)


@router.post("/preview", response_model=SegmentPreviewOut)
async def preview_segment(
    payload: SegmentPreviewRequest,
    container: Container = Depends(get_container),
):
    """Exact audience size plus a small sample for a stored or ad-hoc rule set."""

    try:
        if payload.segment_id is not None:
            rules = (await container.segments.get(payload.segment_id)).rules
        elif payload.rules is not None:
            rules = payload.rules.to_rules()
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Either segmentId or rules must be provided",
            )
        # The UI previews while rules are still being built.
        if not rules["conditions"]:
            return SegmentPreviewOut(audience_size=0, sample_customers=[])
        preview = await container.segments.preview(rules)
    except CampaignBrokerError as exc:
        raise_http_error(exc)
    return SegmentPreviewOut(
        audience_size=preview.count,
        sample_customers=[CustomerOut.model_validate(customer) for customer in preview.sample],
    )


@router.post("", response_model=SegmentOut, status_code=status.HTTP_201_CREATED)
async def create_segment(
    payload: SegmentCreate,
    container: Container = Depends(get_container),
):
    try:
        segment = await container.segments.create(
            name=payload.name,
            description=payload.description,
            rule_set=payload.rules.to_rules(),
        )
    except CampaignBrokerError as exc:
        raise_http_error(exc)
    logger.info("Segment %s created with audience %s", segment.id, segment.audience_size)
    return segment


@router.get("/{segment_id}", response_model=SegmentOut)
async def get_segment(segment_id: int, container: Container = Depends(get_container)):
    try:
        return await container.segments.get(segment_id)
    except CampaignBrokerError as exc:
        raise_http_error(exc)


@router.put("/{segment_id}", response_model=SegmentOut)
async def update_segment(
    segment_id: int,
    payload: SegmentUpdate,
    container: Container = Depends(get_container),
):
    try:
        return await container.segments.update(
            segment_id,
            name=payload.name,
            description=payload.description,
            rule_set=payload.rules.to_rules() if payload.rules is not None else None,
        )
    except CampaignBrokerError as exc:
        raise_http_error(exc)


@router.post("/{segment_id}/refresh", response_model=SegmentOut)
async def refresh_segment(segment_id: int, container: Container = Depends(get_container)):
    """Recount the segment's audience now."""

    try:
        return await container.segments.refresh_audience_size(segment_id)
    except CampaignBrokerError as exc:
        raise_http_error(exc)
