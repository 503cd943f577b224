"""ORM model exports for convenient imports elsewhere in the broker."""

from campaign_broker.models.base import Base
from campaign_broker.models.campaign import Campaign, CampaignStatus
from campaign_broker.models.communication_log import CommunicationLog, LogStatus
from campaign_broker.models.customer import Customer
from campaign_broker.models.processed_event import ProcessedEvent
from campaign_broker.models.segment import Segment

__all__ = [
    "Base",
    "Campaign",
    "CampaignStatus",
    "CommunicationLog",
    "Customer",
    "LogStatus",
    "ProcessedEvent",
    "Segment",
]
