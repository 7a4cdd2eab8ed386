"""
Request and response models for the connector API.
"""

from typing import Any

from pydantic import BaseModel, Field

from ghl_whatsapp.persistence.models import ContentType


class SendMessageRequest(BaseModel):
    """Outbound message from an API caller."""

    to: str = Field(..., min_length=1, description="Recipient phone number")
    content: str | None = Field(default=None, description="Text, or caption for media")
    type: ContentType = ContentType.TEXT
    media_url: str | None = None
    file_name: str | None = None
    queue: bool = Field(default=False, description="Deliver through the drip queue")


class RateLimitRequest(BaseModel):
    delay_between_messages: int | None = Field(default=None, ge=0, alias="delayBetweenMessages")
    messages_per_second: float | None = Field(default=None, gt=0, alias="messagesPerSecond")

    model_config = {"populate_by_name": True}

    def updates(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CRMAttachment(BaseModel):
    url: str
    type: str | None = None


class CRMOutboundWebhook(BaseModel):
    """
    Outbound message webhook sent by the CRM when an agent replies over "SMS".

    The CRM has used several field names over time; all are accepted.
    """

    type: str | None = None
    event_type: str | None = Field(default=None, alias="eventType")
    location_id: str | None = Field(default=None, alias="locationId")
    contact_id: str | None = Field(default=None, alias="contactId")
    phone: str | None = None
    to: str | None = None
    message: str | None = None
    body: str | None = None
    message_body: str | None = Field(default=None, alias="messageBody")
    attachments: list[CRMAttachment] = Field(default_factory=list)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def kind(self) -> str | None:
        return self.type or self.event_type

    @property
    def phone_number(self) -> str | None:
        return self.phone or self.to

    @property
    def text(self) -> str | None:
        return self.message or self.body or self.message_body


class QueuedResponse(BaseModel):
    queued: bool = True
    id: str
    queue_length: int
