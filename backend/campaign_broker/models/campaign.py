"""Campaign model: a message template bound to an audience."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from campaign_broker.models.base import Base


class CampaignStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    FAILED = "Failed"


class Campaign(Base):
    """Campaign table including denormalized delivery statistics."""

    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=CampaignStatus.DRAFT.value, index=True
    )

    # Exactly one audience source is set
    segment_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("segments.id", ondelete="SET NULL")
    )
    custom_rules: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))

    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    audience_resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)

    stats_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    failed_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        server_onupdate=func.now(),
    )

    @property
    def stats(self) -> dict:
        return {
            "delivered": self.stats_delivered,
            "failed": self.stats_failed,
            "pending": self.stats_pending,
            "deliveredPercentage": self.delivered_percentage,
            "failedPercentage": self.failed_percentage,
        }
