"""Pydantic models for segment endpoints."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from campaign_broker.schemas.customer import CustomerOut
from campaign_broker.schemas.rules import RuleSetIn


class SegmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rules: RuleSetIn


class SegmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    rules: Optional[RuleSetIn] = None


class SegmentPreviewRequest(BaseModel):
    """Preview either a stored segment or an ad-hoc rule set."""

    model_config = ConfigDict(populate_by_name=True)

    segment_id: Optional[int] = Field(None, alias="segmentId")
    rules: Optional[RuleSetIn] = None


class SegmentPreviewOut(BaseModel):
    audience_size: int = Field(..., serialization_alias="audienceSize")
    sample_customers: List[CustomerOut] = Field(
        default_factory=list, serialization_alias="sampleCustomers"
    )


class SegmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    rules: dict[str, Any]
    audience_size: int = Field(0, serialization_alias="audienceSize")
    last_refreshed: Optional[datetime] = Field(None, serialization_alias="lastRefreshed")
    created_at: Optional[datetime] = Field(None, serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(None, serialization_alias="updatedAt")
