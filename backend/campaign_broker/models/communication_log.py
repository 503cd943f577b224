"""Communication log model: one tracked delivery per (campaign, customer)."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from campaign_broker.models.base import Base


class LogStatus(str, Enum):
    PENDING = "PENDING"
    # In-flight marker held by exactly one worker tick
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


OPEN_LOG_STATUSES = (LogStatus.PENDING.value, LogStatus.PROCESSING.value)
TERMINAL_LOG_STATUSES = (LogStatus.SENT.value, LogStatus.FAILED.value)


class CommunicationLog(Base):
    """Delivery record; PENDING/PROCESSING -> SENT|FAILED happens exactly once."""

    __tablename__ = "communication_logs"
    __table_args__ = (
        UniqueConstraint("campaign_id", "customer_id", name="uq_comm_log_campaign_customer"),
        Index("ix_comm_log_status_created", "status", "created_at"),
        Index("ix_comm_log_campaign_status", "campaign_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    customer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=LogStatus.PENDING.value
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON(none_as_null=True))

    claim_token: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        server_onupdate=func.now(),
    )
