"""Pydantic models for vendor webhooks relayed onto the bus."""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class DeliveryReceiptIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: Union[int, str] = Field(..., alias="messageId", description="Communication log id")
    status: Literal["SENT", "DELIVERED", "FAILED"]
    error_message: Optional[str] = Field(None, alias="errorMessage")
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = Field(None, description="Vendor-side delivery time, ISO 8601")

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "messageId": self.message_id,
            "status": self.status,
            "errorMessage": self.error_message,
            "metadata": self.metadata or {},
        }
        if self.timestamp:
            payload["timestamp"] = self.timestamp
        return payload


class EventCallbackIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: Union[int, str] = Field(..., alias="messageId")
    event_type: str = Field(..., alias="eventType", description="e.g. OPENED, CLICKED, REPLIED")
    url: Optional[str] = None
    reply_text: Optional[str] = Field(None, alias="replyText")
    timestamp: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "messageId": self.message_id,
            "eventType": self.event_type,
            "url": self.url,
            "replyText": self.reply_text,
        }
        if self.timestamp:
            payload["timestamp"] = self.timestamp
        return payload


class PublishAck(BaseModel):
    status: str = "accepted"
    receivers: int
