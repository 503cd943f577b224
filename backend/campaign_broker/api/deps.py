"""Request-scoped dependencies and error translation for the API."""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, Request, status

from campaign_broker.container import Container
from campaign_broker.core.errors import (
    AudienceResolutionError,
    CampaignBrokerError,
    CampaignNotFoundError,
    InvalidRuleError,
    SegmentNotFoundError,
)


def get_container(request: Request) -> Container:
    return request.app.state.container


def raise_http_error(exc: CampaignBrokerError) -> NoReturn:
    """Translate broker errors raised to a synchronous caller into HTTP errors."""

    if isinstance(exc, (SegmentNotFoundError, CampaignNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, (InvalidRuleError, AudienceResolutionError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc
