"""Pydantic models for campaign endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from campaign_broker.schemas.rules import RuleSetIn


class CampaignCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    message: str = Field(..., min_length=1, description="Template; {{name}} is personalized")
    segment_id: Optional[int] = Field(None, alias="segmentId")
    custom_rules: Optional[RuleSetIn] = Field(None, alias="customRules")
    scheduled_at: Optional[datetime] = Field(None, alias="scheduledAt")


class CampaignStatsOut(BaseModel):
    delivered: int = 0
    failed: int = 0
    pending: int = 0
    deliveredPercentage: float = 0.0
    failedPercentage: float = 0.0


class CampaignOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    message: str
    status: str
    segment_id: Optional[int] = Field(None, serialization_alias="segmentId")
    custom_rules: Optional[dict] = Field(None, serialization_alias="customRules")
    audience_size: int = Field(0, serialization_alias="audienceSize")
    scheduled_at: Optional[datetime] = Field(None, serialization_alias="scheduledAt")
    sent_at: Optional[datetime] = Field(None, serialization_alias="sentAt")
    completed_at: Optional[datetime] = Field(None, serialization_alias="completedAt")
    failure_reason: Optional[str] = Field(None, serialization_alias="failureReason")
    stats: CampaignStatsOut
    created_at: Optional[datetime] = Field(None, serialization_alias="createdAt")
