"""
Message Classifier & Deduplicator

Turns a raw session MessageEvent into Drop, Inbound or Outbound.

Message payloads are decoded once, here, into a closed set of content
variants. Payload shapes we do not know become Unknown and are logged so
they can be added later.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union
from uuid import UUID

from sqlalchemy.orm import Session

from ghl_whatsapp.persistence.models import ContentType
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.session.base import BROADCAST_JID, GROUP_SUFFIX, MessageEvent

logger = logging.getLogger(__name__)

# Containers whose inner "message" holds the real payload
WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)

# Keys carrying no content of their own
METADATA_KEYS = {"messageContextInfo"}

PROTOCOL_KEYS = ("protocolMessage", "senderKeyDistributionMessage")


# =============================================================================
# Content variants
# =============================================================================


@dataclass(frozen=True)
class Content(ABC):
    """Decoded message content; every variant renders a text form."""

    kind: ClassVar[ContentType]

    @property
    @abstractmethod
    def text(self) -> str:
        ...

    @property
    def media_url(self) -> str | None:
        return None


@dataclass(frozen=True)
class Text(Content):
    kind: ClassVar[ContentType] = ContentType.TEXT
    body: str

    @property
    def text(self) -> str:
        return self.body


@dataclass(frozen=True)
class Image(Content):
    kind: ClassVar[ContentType] = ContentType.IMAGE
    caption: str | None = None
    url: str | None = None

    @property
    def text(self) -> str:
        return self.caption or "[Image]"

    @property
    def media_url(self) -> str | None:
        return self.url


@dataclass(frozen=True)
class Document(Content):
    kind: ClassVar[ContentType] = ContentType.DOCUMENT
    file_name: str | None = None
    url: str | None = None

    @property
    def text(self) -> str:
        return self.file_name or "[Document]"

    @property
    def media_url(self) -> str | None:
        return self.url


@dataclass(frozen=True)
class Audio(Content):
    kind: ClassVar[ContentType] = ContentType.AUDIO
    url: str | None = None

    @property
    def text(self) -> str:
        return "[Voice message]"

    @property
    def media_url(self) -> str | None:
        return self.url


@dataclass(frozen=True)
class Video(Content):
    kind: ClassVar[ContentType] = ContentType.VIDEO
    caption: str | None = None
    url: str | None = None

    @property
    def text(self) -> str:
        return self.caption or "[Video]"

    @property
    def media_url(self) -> str | None:
        return self.url


@dataclass(frozen=True)
class Sticker(Content):
    kind: ClassVar[ContentType] = ContentType.STICKER

    @property
    def text(self) -> str:
        return "[Sticker]"


@dataclass(frozen=True)
class ContactCard(Content):
    kind: ClassVar[ContentType] = ContentType.CONTACT
    display_name: str | None = None

    @property
    def text(self) -> str:
        return self.display_name or "[Contact]"


@dataclass(frozen=True)
class Location(Content):
    kind: ClassVar[ContentType] = ContentType.LOCATION
    latitude: float | None = None
    longitude: float | None = None

    @property
    def text(self) -> str:
        return "[Location shared]"


@dataclass(frozen=True)
class Unknown(Content):
    kind: ClassVar[ContentType] = ContentType.UNKNOWN
    keys: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def text(self) -> str:
        return "[Message]"


# =============================================================================
# Classification results
# =============================================================================


class DropReason:
    BROADCAST = "broadcast"
    GROUP = "group"
    DECRYPTION_FAILED = "decryption_failed"
    DUPLICATE = "duplicate"
    REACTION = "reaction"
    PROTOCOL = "protocol"


@dataclass(frozen=True)
class Drop:
    reason: str


@dataclass(frozen=True)
class Inbound:
    event: MessageEvent
    content: Content


@dataclass(frozen=True)
class Outbound:
    event: MessageEvent
    content: Content


Classification = Union[Drop, Inbound, Outbound]


def unwrap(message: dict[str, Any]) -> dict[str, Any]:
    """Strip ephemeral/view-once containers."""
    for _ in range(len(WRAPPER_KEYS)):
        for key in WRAPPER_KEYS:
            inner = (message.get(key) or {}).get("message")
            if inner:
                message = inner
                break
        else:
            return message
    return message


def decode_content(message: dict[str, Any]) -> Content | Drop:
    """
    Decode a message payload, in priority order over known shapes.

    Returns Drop for reactions and protocol housekeeping.
    """
    message = unwrap(message)

    if message.get("conversation"):
        return Text(message["conversation"])

    extended = message.get("extendedTextMessage")
    if extended and extended.get("text"):
        return Text(extended["text"])

    if "imageMessage" in message:
        image = message["imageMessage"] or {}
        return Image(caption=image.get("caption"), url=image.get("url"))

    if "documentMessage" in message:
        document = message["documentMessage"] or {}
        return Document(file_name=document.get("fileName"), url=document.get("url"))

    if "audioMessage" in message:
        return Audio(url=(message["audioMessage"] or {}).get("url"))

    if "videoMessage" in message:
        video = message["videoMessage"] or {}
        return Video(caption=video.get("caption"), url=video.get("url"))

    if "stickerMessage" in message:
        return Sticker()

    if "contactMessage" in message:
        return ContactCard(display_name=(message["contactMessage"] or {}).get("displayName"))

    if "locationMessage" in message:
        location = message["locationMessage"] or {}
        return Location(
            latitude=location.get("degreesLatitude"),
            longitude=location.get("degreesLongitude"),
        )

    if "reactionMessage" in message:
        return Drop(DropReason.REACTION)

    content_keys = [k for k in message if k not in METADATA_KEYS]
    if any(k in message for k in PROTOCOL_KEYS) or not content_keys:
        return Drop(DropReason.PROTOCOL)

    logger.warning("Unrecognized message shape", extra={"message_keys": sorted(content_keys)})
    return Unknown(keys=tuple(sorted(content_keys)), raw=message)


class MessageClassifier:
    """
    Classifies session message events for one database session.

    Order: noise filter, decryption check, dedup, content decode.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = ConnectorRepository(db)

    def classify(self, event: MessageEvent) -> Classification:
        tenant_id: UUID = event.tenant_id
        remote_jid = event.remote_jid or ""

        if remote_jid == BROADCAST_JID or remote_jid.endswith("@broadcast"):
            return Drop(DropReason.BROADCAST)
        if remote_jid.endswith(GROUP_SUFFIX):
            return Drop(DropReason.GROUP)

        # Nothing is persisted for an undecryptable event, so the gateway's
        # retry with the same id is still processed.
        if not event.message:
            logger.warning(
                "Message could not be decrypted, skipping",
                extra={
                    "tenant_id": str(tenant_id),
                    "message_id": event.provider_message_id,
                    "remote_jid": remote_jid,
                    "from_me": event.from_me,
                },
            )
            return Drop(DropReason.DECRYPTION_FAILED)

        if self.repo.is_message_processed(tenant_id, event.provider_message_id):
            logger.debug(
                f"Message {event.provider_message_id} already processed, skipping",
                extra={"tenant_id": str(tenant_id)},
            )
            return Drop(DropReason.DUPLICATE)

        decoded = decode_content(event.message)
        if isinstance(decoded, Drop):
            return decoded

        if event.from_me:
            return Outbound(event, decoded)
        return Inbound(event, decoded)
