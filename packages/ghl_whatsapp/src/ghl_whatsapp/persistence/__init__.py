from ghl_whatsapp.persistence.models import (
    Base,
    ConnectionStatus,
    ContentType,
    Message,
    MessageDirection,
    MessageStatus,
    SubAccount,
    WebhookSubscription,
    WhatsAppMapping,
)
from ghl_whatsapp.persistence.repo import ConnectorRepository

__all__ = [
    "Base",
    "ConnectionStatus",
    "ConnectorRepository",
    "ContentType",
    "Message",
    "MessageDirection",
    "MessageStatus",
    "SubAccount",
    "WebhookSubscription",
    "WhatsAppMapping",
]
