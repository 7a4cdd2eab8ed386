"""
Connector Event Envelope

Standard wrapper for connector events published to Redis Streams.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4


@dataclass
class ConnectorEnvelope:
    """
    Standard event envelope for connector events.

    Attributes:
        event_id: Unique identifier for this event instance
        event_type: Type of event (ConnectorEventType value)
        tenant_id: Sub-account the event belongs to
        occurred_at: When the event occurred (UTC)
        version: Event contract version
        payload: Event-specific data
    """

    event_id: UUID
    event_type: str
    tenant_id: UUID
    occurred_at: datetime
    payload: dict[str, Any]
    version: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        tenant_id: UUID,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> "ConnectorEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            event_type=str(event_type),
            tenant_id=tenant_id,
            occurred_at=datetime.utcnow(),
            payload=payload,
            metadata=metadata or {},
        )

    def to_webhook_body(self) -> dict[str, Any]:
        """Body posted to tenant webhooks."""
        return {
            "event": self.event_type,
            "sub_account_id": str(self.tenant_id),
            "timestamp": self.occurred_at.isoformat(),
            "data": self.payload,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "tenant_id": str(self.tenant_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload, default=str),
            "metadata": json.dumps(self.metadata, default=str),
        }
