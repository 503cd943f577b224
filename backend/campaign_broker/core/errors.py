"""Exception taxonomy for the segmentation and delivery pipeline.

Compilation and validation errors are raised to the synchronous caller.
Delivery-time errors are absorbed into log and campaign state by the workers,
which only log them.
"""

from __future__ import annotations


class CampaignBrokerError(Exception):
    """Base class for all broker errors."""


class InvalidRuleError(CampaignBrokerError):
    """A segment rule set or one of its conditions cannot be compiled."""

    def __init__(self, message: str, *, index: int | None = None):
        if index is not None:
            message = f"condition[{index}]: {message}"
        super().__init__(message)
        self.index = index


class AudienceResolutionError(CampaignBrokerError):
    """The audience of a campaign cannot be determined."""


class SegmentNotFoundError(AudienceResolutionError):
    def __init__(self, segment_id: int):
        super().__init__(f"Segment not found: {segment_id}")
        self.segment_id = segment_id


class CampaignNotFoundError(CampaignBrokerError):
    def __init__(self, campaign_id: int):
        super().__init__(f"Campaign not found: {campaign_id}")
        self.campaign_id = campaign_id


class DeliveryError(CampaignBrokerError):
    """A single message could not be delivered by the vendor."""


class BatchProcessingError(CampaignBrokerError):
    """Unexpected failure while processing one log of a delivery batch."""

    def __init__(self, log_id: int, cause: BaseException):
        super().__init__(str(cause) or type(cause).__name__)
        self.log_id = log_id
        self.cause = cause
