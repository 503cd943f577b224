"""Vendor webhooks. Payloads are validated and relayed onto the message bus."""

import logging

from fastapi import APIRouter, Depends, status

from campaign_broker.api.deps import get_container
from campaign_broker.bus.message_bus import DELIVERY_RECEIPT, EVENT_CALLBACK
from campaign_broker.container import Container
from campaign_broker.schemas.events import DeliveryReceiptIn, EventCallbackIn, PublishAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = logging.getLogger(__name__)


@router.post("/delivery-receipt", response_model=PublishAck, status_code=status.HTTP_202_ACCEPTED)
async def delivery_receipt(
    payload: DeliveryReceiptIn,
    container: Container = Depends(get_container),
):
    receivers = await container.bus.publish(DELIVERY_RECEIPT, payload.to_payload())
    logger.debug("Delivery receipt for %s relayed to %s receivers", payload.message_id, receivers)
    return PublishAck(receivers=receivers)


@router.post("/event", response_model=PublishAck, status_code=status.HTTP_202_ACCEPTED)
async def event_callback(
    payload: EventCallbackIn,
    container: Container = Depends(get_container),
):
    receivers = await container.bus.publish(EVENT_CALLBACK, payload.to_payload())
    return PublishAck(receivers=receivers)
