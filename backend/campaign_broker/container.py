"""Explicit wiring of engine, bus, gateway and services from ``Settings``."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from campaign_broker.bus.message_bus import (
    CAMPAIGN_CREATED,
    CUSTOMER_BULK_CREATE,
    CUSTOMER_CREATED,
    CUSTOMER_DELETED,
    CUSTOMER_UPDATED,
    DELIVERY_RECEIPT,
    EVENT_CALLBACK,
    MessageBus,
    build_message_bus,
)
from campaign_broker.consumers.campaign import CampaignEventConsumer
from campaign_broker.consumers.customer import CustomerEventConsumer
from campaign_broker.consumers.delivery_receipt import DeliveryReceiptConsumer
from campaign_broker.consumers.dispatcher import EventDispatcher
from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.db import (
    SessionFactory,
    create_engine_from_settings,
    create_session_factory,
)
from campaign_broker.models.base import Base
from campaign_broker.services.audience import AudienceResolver
from campaign_broker.services.campaign_stats import CampaignStatsWriter
from campaign_broker.services.customers import CustomerService
from campaign_broker.services.delivery_log import DeliveryLogStore
from campaign_broker.services.orchestrator import CampaignOrchestrator
from campaign_broker.services.segments import SegmentService
from campaign_broker.services.vendor import VendorGateway, build_vendor_gateway
from campaign_broker.workers.delivery import DeliveryWorker
from campaign_broker.workers.scheduler import ScheduledCampaignTrigger


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: SessionFactory
    bus: MessageBus
    gateway: VendorGateway
    resolver: AudienceResolver
    segments: SegmentService
    customers: CustomerService
    log_store: DeliveryLogStore
    stats: CampaignStatsWriter
    orchestrator: CampaignOrchestrator
    delivery_worker: DeliveryWorker
    scheduler: ScheduledCampaignTrigger
    dispatcher: EventDispatcher

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.bus.close()
        await self.engine.dispose()


def build_container(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    bus: MessageBus | None = None,
    gateway: VendorGateway | None = None,
) -> Container:
    """Build every component; ``engine``, ``bus`` and ``gateway`` may be injected."""

    settings = settings or default_settings
    engine = engine or create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)
    bus = bus or build_message_bus(settings.REDIS_URL)
    gateway = gateway or build_vendor_gateway(settings)

    resolver = AudienceResolver(session_factory, settings)
    segments = SegmentService(session_factory, resolver)
    customers = CustomerService(session_factory)
    log_store = DeliveryLogStore(session_factory, settings)
    stats = CampaignStatsWriter(session_factory, log_store, settings)
    orchestrator = CampaignOrchestrator(
        session_factory,
        resolver,
        log_store,
        stats,
        bus,
        settings,
        recipient_field=gateway.recipient_field,
    )

    customer_consumer = CustomerEventConsumer(segments, customers)
    campaign_consumer = CampaignEventConsumer(orchestrator)
    receipt_consumer = DeliveryReceiptConsumer(log_store, stats)
    dispatcher = EventDispatcher(
        session_factory,
        {
            CUSTOMER_CREATED: customer_consumer.on_customer_changed,
            CUSTOMER_UPDATED: customer_consumer.on_customer_changed,
            CUSTOMER_DELETED: customer_consumer.on_customer_changed,
            CUSTOMER_BULK_CREATE: customer_consumer.on_bulk_create,
            CAMPAIGN_CREATED: campaign_consumer.on_created,
            DELIVERY_RECEIPT: receipt_consumer.on_receipt,
            EVENT_CALLBACK: receipt_consumer.on_event_callback,
        },
    )

    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        bus=bus,
        gateway=gateway,
        resolver=resolver,
        segments=segments,
        customers=customers,
        log_store=log_store,
        stats=stats,
        orchestrator=orchestrator,
        delivery_worker=DeliveryWorker(log_store, stats, gateway, settings),
        scheduler=ScheduledCampaignTrigger(session_factory, orchestrator),
        dispatcher=dispatcher,
    )
