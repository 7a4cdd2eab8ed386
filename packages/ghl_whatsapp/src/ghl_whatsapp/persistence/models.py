"""
Connector Database Models

Tables owned by the connector engine.

Tables:
- sub_accounts: One WhatsApp session bound to one CRM location (the tenant)
- whatsapp_mappings: Per-tenant identity cache (phone number <-> opaque WhatsApp id)
- messages: Append-only delivery records, deduplicated by provider message id
- webhooks: Tenant-configured event callbacks
"""

import secrets
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ConnectionStatus(str, Enum):
    """Connection state of a tenant's WhatsApp session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    CONNECTED = "connected"


class MessageDirection(str, Enum):
    """Direction of a WhatsApp message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """Delivery status of a WhatsApp message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ContentType(str, Enum):
    """Content kinds persisted on message records."""

    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    STICKER = "sticker"
    CONTACT = "contact"
    LOCATION = "location"
    UNKNOWN = "unknown"


def generate_api_key() -> str:
    return secrets.token_hex(32)


def instance_name_for(tenant_id) -> str:
    """Session gateway instance name for a tenant."""
    return f"subaccount_{tenant_id}"


class TimestampMixin:
    """Common fields for all connector models."""

    id = Column(Uuid, primary_key=True, default=uuid4)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class SubAccount(Base, TimestampMixin):
    """
    A tenant: one WhatsApp session bound to (at most) one CRM location.

    Status transitions are driven only by the connection lifecycle manager.
    """

    __tablename__ = "sub_accounts"

    name = Column(String(255), nullable=False)
    api_key = Column(String(64), nullable=False, unique=True, default=generate_api_key)
    status = Column(String(20), nullable=False, default=ConnectionStatus.DISCONNECTED.value)
    phone_number = Column(String(20), nullable=True)  # Set on successful connect
    last_connected_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_paid = Column(Boolean, nullable=False, default=False)

    # CRM binding
    crm_location_id = Column(String(100), nullable=True)
    crm_location_name = Column(String(255), nullable=True)
    crm_connected = Column(Boolean, nullable=False, default=False)
    crm_access_token = Column(Text, nullable=True)  # Fernet-encrypted when ENCRYPTION_KEY is set

    rate_limit = Column(JSON, nullable=True)  # Persisted outbound queue override

    __table_args__ = (
        Index("idx_sub_accounts_status", "status"),
        Index("idx_sub_accounts_crm_location", "crm_location_id"),
    )

    @property
    def instance_name(self) -> str:
        return instance_name_for(self.id)


class WhatsAppMapping(Base, TimestampMixin):
    """
    Identity cache: canonical phone number and the opaque WhatsApp id (LID) it uses.

    whatsapp_id stays null until learned from a lookup, a hint, or a reply.
    """

    __tablename__ = "whatsapp_mappings"

    tenant_id = Column(Uuid, nullable=False, index=True)
    phone_number = Column(String(20), nullable=False)  # Digits only
    whatsapp_id = Column(String(100), nullable=True)
    contact_name = Column(String(255), nullable=True)
    last_activity_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_whatsapp_mappings_tenant_phone"),
        Index("idx_whatsapp_mappings_tenant_whatsapp_id", "tenant_id", "whatsapp_id"),
    )


class Message(Base, TimestampMixin):
    """
    Delivery record for every WhatsApp event actually processed.

    (tenant_id, provider_message_id) is the dedup key.
    """

    __tablename__ = "messages"

    tenant_id = Column(Uuid, nullable=False, index=True)
    provider_message_id = Column(String(100), nullable=False)
    direction = Column(String(10), nullable=False)
    from_number = Column(String(100), nullable=True)
    to_number = Column(String(100), nullable=True)
    content_type = Column(String(20), nullable=False, default=ContentType.TEXT.value)
    content = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    extra = Column("metadata", JSON, nullable=False, default=dict)  # raw payload, source, resolution

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_message_id", name="uq_messages_tenant_provider_id"),
        Index("idx_messages_tenant_created", "tenant_id", "created_at"),
    )


class WebhookSubscription(Base, TimestampMixin):
    """Tenant-configured HTTP callback for connector events."""

    __tablename__ = "webhooks"

    tenant_id = Column(Uuid, nullable=False, index=True)
    url = Column(Text, nullable=False)
    secret = Column(String(128), nullable=True)
    events = Column(JSON, nullable=False, default=list)  # ["*"] subscribes to everything
    is_active = Column(Boolean, nullable=False, default=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime, nullable=True)
