"""
WhatsApp Session Client Base

Abstract interface for the managed WhatsApp session (one per tenant).
Implementations: Evolution API gateway, Stub (for development and tests).

Sessions emit a closed set of events: QR codes, connection updates,
message events and identity hints. Implementations either push them to the
registered handler or have them fed in from a webhook ingress.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union
from uuid import UUID

from ghl_whatsapp.persistence.models import ContentType

# Baileys DisconnectReason.loggedOut
LOGGED_OUT_STATUS_CODE = 401

PHONE_SUFFIX = "@s.whatsapp.net"
LID_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"
BROADCAST_JID = "status@broadcast"


def jid_user(jid: str) -> str:
    """User part of a JID, without device suffix ("123:4@s.whatsapp.net" -> "123")."""
    return jid.split("@", 1)[0].split(":", 1)[0]


def phone_jid(phone: str) -> str:
    return f"{phone}{PHONE_SUFFIX}"


@dataclass
class QrEvent:
    """A new scannable QR code was generated for a tenant."""

    tenant_id: UUID
    qr_code: str


@dataclass
class ConnectionUpdate:
    """
    Connection state change reported by the session.

    state is "connecting", "open" or "close". On open, me_jid is the account JID.
    On close, status_code tells a logout apart from a recoverable drop.
    """

    tenant_id: UUID
    state: str
    me_jid: str | None = None
    status_code: int | None = None
    reason: str | None = None

    @property
    def is_logged_out(self) -> bool:
        return self.status_code == LOGGED_OUT_STATUS_CODE


@dataclass
class MessageEvent:
    """
    Raw message event (inbound, or outbound echo when from_me is True).

    message is the undecoded payload; None means the session could not decrypt it.
    alt_jid is the phone-number JID the session reports alongside an opaque (LID) sender.
    """

    tenant_id: UUID
    provider_message_id: str
    remote_jid: str
    from_me: bool
    message: dict[str, Any] | None
    push_name: str | None = None
    alt_jid: str | None = None
    participant: str | None = None
    timestamp: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class IdentityHint:
    """The session learned which phone number an opaque id belongs to."""

    tenant_id: UUID
    whatsapp_id: str
    phone_number: str
    name: str | None = None


SessionEvent = Union[QrEvent, ConnectionUpdate, MessageEvent, IdentityHint]
EventHandler = Callable[[SessionEvent], Awaitable[None]]


@dataclass
class OutboundPayload:
    """
    Content to send.

    media is a URL or base64 string for non-text kinds.
    """

    kind: ContentType
    text: str | None = None
    media: str | None = None
    file_name: str | None = None
    mime_type: str | None = None

    def describe(self) -> str:
        """Text stored on the message record."""
        if self.kind == ContentType.TEXT:
            return self.text or ""
        return self.text or f"[{self.kind.value.capitalize()}]"


class SessionClient(ABC):
    """
    Abstract interface for a managed WhatsApp session gateway.

    Implementations must handle:
    - Starting a session (QR pairing or restoring stored credentials)
    - Sending text and media
    - Phone number directory lookups
    - Logout (terminal, wipes credentials) and close (keeps credentials)
    """

    def __init__(self) -> None:
        self._event_handler: EventHandler | None = None

    def set_event_handler(self, handler: EventHandler) -> None:
        """Register the coroutine that receives session events."""
        self._event_handler = handler

    async def emit(self, event: SessionEvent) -> None:
        """Deliver an event to the registered handler."""
        if self._event_handler is not None:
            await self._event_handler(event)

    @abstractmethod
    async def connect(self, tenant_id: UUID) -> str:
        """
        Start (or resume) the session for a tenant.

        Returns:
            The gateway's immediate state: "connecting", "qr_ready" or "connected"
        """
        ...

    @abstractmethod
    async def send(self, tenant_id: UUID, destination: str, payload: OutboundPayload) -> str:
        """
        Send a message.

        Args:
            tenant_id: Tenant whose session sends
            destination: Recipient JID or phone digits
            payload: Content to send

        Returns:
            Provider message ID

        Raises:
            SessionError: if the gateway rejects or fails the send
        """
        ...

    @abstractmethod
    async def lookup_identifier(self, tenant_id: UUID, phone: str) -> str | None:
        """
        Ask the WhatsApp directory which JID a phone number is registered as.

        Returns:
            The JID (phone or LID form), or None if not on WhatsApp
        """
        ...

    @abstractmethod
    async def logout(self, tenant_id: UUID) -> None:
        """Log out and wipe stored credentials."""
        ...

    @abstractmethod
    async def close(self, tenant_id: UUID) -> None:
        """Drop the live socket, keeping credentials for a later reconnect."""
        ...

    @abstractmethod
    async def has_stored_credentials(self, tenant_id: UUID) -> bool:
        """Whether a session can be restored without a new QR scan."""
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        return None
