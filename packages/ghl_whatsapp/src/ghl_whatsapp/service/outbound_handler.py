"""
Outbound Message Handler

Direct (non-queued) sends:
1. Checks the tenant's session is connected
2. Validates and builds the payload
3. Asks the WhatsApp directory for the recipient's JID and records it
4. Marks origin so the session echo is not mirrored to the CRM
5. Sends, persists the message record, notifies webhooks

Send errors propagate to the caller.
"""

import logging
import mimetypes
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from basecore.db import session_scope
from ghl_whatsapp.contracts.event_types import ConnectorEventType
from ghl_whatsapp.errors import InvalidMessageError, NotConnectedError, SessionError, SubAccountNotFoundError
from ghl_whatsapp.persistence.models import ContentType, Message, MessageDirection, MessageStatus
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.routing.identity_resolver import IdentityResolver, clean_phone
from ghl_whatsapp.session.base import OutboundPayload, SessionClient, jid_user, phone_jid

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".zip": "application/zip",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
}


def get_mime_type(file_name: str | None) -> str:
    """MIME type from a file name or URL, defaulting to octet-stream."""
    if not file_name:
        return "application/octet-stream"
    path = urlparse(file_name).path or file_name
    dot = path.rfind(".")
    extension = path[dot:].lower() if dot != -1 else ""
    return MIME_TYPES.get(extension) or mimetypes.guess_type(path)[0] or "application/octet-stream"


def build_payload(
    to: str,
    kind: ContentType,
    content: str | None,
    media: str | None = None,
    file_name: str | None = None,
) -> OutboundPayload:
    """
    Validate an outbound message and build the session payload.

    Raises:
        InvalidMessageError: on a missing recipient, text or media
    """
    if not clean_phone(to):
        raise InvalidMessageError("Recipient phone number is required")

    if kind == ContentType.TEXT:
        if not content:
            raise InvalidMessageError("Text content is required")
        return OutboundPayload(kind=kind, text=content)

    if kind not in (ContentType.IMAGE, ContentType.DOCUMENT, ContentType.AUDIO, ContentType.VIDEO):
        raise InvalidMessageError(f"Unsupported message type: {kind.value}")

    if not media:
        raise InvalidMessageError(f"Media URL or data is required for {kind.value} messages")

    if kind == ContentType.DOCUMENT:
        name = file_name or urlparse(media).path.rsplit("/", 1)[-1] or "document"
        return OutboundPayload(kind=kind, text=content, media=media, file_name=name, mime_type=get_mime_type(name))

    return OutboundPayload(kind=kind, text=content, media=media, mime_type=get_mime_type(file_name or media))


def message_to_dict(message: Message) -> dict[str, Any]:
    """Serialize a message record for webhooks and API responses."""
    return {
        "id": str(message.id),
        "message_id": message.provider_message_id,
        "direction": message.direction,
        "from": message.from_number,
        "to": message.to_number,
        "type": message.content_type,
        "content": message.content,
        "media_url": message.media_url,
        "status": message.status,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


class OutboundSender:
    """
    Sends messages through a tenant's session.

    Used directly by the API and as the delivery function of the outbound queue.
    """

    def __init__(
        self,
        client: SessionClient,
        registry,
        origin,
        notifier,
        session_factory: sessionmaker,
        match_window_seconds: int = 300,
    ):
        self.client = client
        self.registry = registry
        self.origin = origin
        self.notifier = notifier
        self.session_factory = session_factory
        self.match_window_seconds = match_window_seconds

    async def send_message(
        self,
        tenant_id: UUID,
        to: str,
        content: str | None,
        kind: ContentType = ContentType.TEXT,
        media: str | None = None,
        file_name: str | None = None,
        source: str = "api",
    ) -> Message:
        """
        Send one message now.

        Returns:
            The persisted outbound Message

        Raises:
            NotConnectedError: if the tenant's session is not connected
            InvalidMessageError: if validation fails
            SessionError: if the gateway fails the send
        """
        if not self.registry.is_connected(tenant_id):
            raise NotConnectedError(tenant_id)

        payload = build_payload(to, kind, content, media, file_name)
        phone = clean_phone(to)

        destination = await self._resolve_destination(tenant_id, phone)

        self.origin.mark(tenant_id, phone)

        try:
            provider_message_id = await self.client.send(tenant_id, destination, payload)
        except SessionError as e:
            logger.error(
                f"Failed to send message: {e}",
                extra={"tenant_id": str(tenant_id), "to": phone, "kind": kind.value, "code": e.code},
            )
            raise

        with session_scope(self.session_factory) as db:
            repo = ConnectorRepository(db)
            subaccount = repo.get_subaccount(tenant_id)
            if subaccount is None:
                raise SubAccountNotFoundError(tenant_id)

            message, _ = repo.create_message(
                tenant_id=tenant_id,
                provider_message_id=provider_message_id,
                direction=MessageDirection.OUTBOUND.value,
                from_number=subaccount.phone_number,
                to_number=phone,
                content_type=kind.value,
                content=payload.describe(),
                media_url=media if media and media.startswith("http") else None,
                status=MessageStatus.SENT,
                extra={"source": source, "destination": destination},
            )
            IdentityResolver(db, self.match_window_seconds).note_send(tenant_id, phone)
            data = message_to_dict(message)

        logger.info(
            "Message sent",
            extra={"tenant_id": str(tenant_id), "to": phone, "message_id": provider_message_id},
        )

        await self.notifier.trigger(tenant_id, ConnectorEventType.MESSAGE_SENT, data)
        return message

    async def _resolve_destination(self, tenant_id: UUID, phone: str) -> str:
        """
        Directory lookup for the recipient, persisted before sending.

        Falls back to the plain phone JID when the lookup fails.
        """
        try:
            jid = await self.client.lookup_identifier(tenant_id, phone)
        except SessionError as e:
            logger.warning(f"Directory lookup failed: {e}", extra={"tenant_id": str(tenant_id), "phone": phone})
            return phone_jid(phone)

        if not jid:
            return phone_jid(phone)

        if jid_user(jid) != phone:
            with session_scope(self.session_factory) as db:
                IdentityResolver(db, self.match_window_seconds).learn(tenant_id, jid, phone)
            logger.info(
                "Learned WhatsApp id from directory",
                extra={"tenant_id": str(tenant_id), "phone": phone, "whatsapp_id": jid_user(jid)},
            )
        return jid
