"""Segment model: a named, reusable audience rule set."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from campaign_broker.models.base import Base


class Segment(Base):
    """Segment table. ``audience_size`` and ``last_refreshed`` are a cache."""

    __tablename__ = "segments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    condition_type: Mapped[str] = mapped_column(String(3), nullable=False, default="AND")
    # Ordered list of {"field", "operator", "value"} dicts
    conditions: Mapped[list] = mapped_column(JSON, nullable=False)
    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_refreshed: Mapped[Optional[datetime]] = mapped_column(DateTime)

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
    def rules(self) -> dict:
        return {"conditionType": self.condition_type, "conditions": list(self.conditions or [])}
