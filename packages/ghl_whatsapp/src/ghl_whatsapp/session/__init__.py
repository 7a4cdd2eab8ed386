from ghl_whatsapp.session.base import (
    ConnectionUpdate,
    IdentityHint,
    MessageEvent,
    OutboundPayload,
    QrEvent,
    SessionClient,
    SessionEvent,
)

__all__ = [
    "ConnectionUpdate",
    "IdentityHint",
    "MessageEvent",
    "OutboundPayload",
    "QrEvent",
    "SessionClient",
    "SessionEvent",
]
