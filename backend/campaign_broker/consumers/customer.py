"""Customer change events keep segment audience sizes current."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from campaign_broker.services.customers import CustomerService
from campaign_broker.services.segments import SegmentService


class CustomerEventConsumer:
    def __init__(self, segments: SegmentService, customers: CustomerService):
        self._segments = segments
        self._customers = customers

    async def on_customer_changed(self, payload: Mapping[str, Any]) -> None:
        # Any customer change may move any segment, so every segment is recounted.
        refreshed = await self._segments.refresh_all()
        logger.bind(customer_id=payload.get("customerId"), refreshed=refreshed).info(
            "segments_refreshed_after_customer_change"
        )

    async def on_bulk_create(self, payload: Mapping[str, Any]) -> None:
        customers = payload.get("customers")
        if not isinstance(customers, list):
            logger.bind(event_id=payload.get("eventId")).warning("bulk_create_without_customers")
            return
        await self._customers.bulk_upsert(customers)
        await self._segments.refresh_all()
