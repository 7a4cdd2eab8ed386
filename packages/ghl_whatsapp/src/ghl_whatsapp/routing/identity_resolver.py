"""
Identity Resolver

Maps the contact identifier carried by a session event (phone JID or opaque
LID) to a canonical phone number and display name.

Resolution order:
1. Identifier already shaped like a phone number (and not flagged opaque)
2. Stored mapping for the opaque id
3. Phone JID reported by the session alongside the opaque id (persisted at once)
4. Exactly one unmapped contact with activity inside the match window
5. Unresolved: the raw id is kept as a non-routable placeholder

Only sends (API, queue, or the operator's own phone) make a contact a step 4
candidate; inbound phone senders never do.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from ghl_whatsapp.persistence.models import WhatsAppMapping
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.session.base import LID_SUFFIX, jid_user

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^[1-9]\d{9,14}$")


def clean_phone(value: str) -> str:
    """Strip everything but digits."""
    return re.sub(r"\D", "", value or "")


def is_phone_number(value: str) -> bool:
    return bool(PHONE_PATTERN.match(value or ""))


class ResolutionMethod:
    DIRECT = "direct"
    MAPPING = "mapping"
    DIRECTORY = "directory"
    HEURISTIC = "heuristic"
    UNRESOLVED = "unresolved"


@dataclass
class ResolvedIdentity:
    """Best-effort identity for one session event."""

    raw_id: str
    phone_number: str | None
    contact_name: str | None
    is_opaque: bool
    method: str

    @property
    def resolved(self) -> bool:
        return self.phone_number is not None

    @property
    def address(self) -> str:
        """Phone number, or the raw id as a placeholder when unresolved."""
        return self.phone_number or self.raw_id


class IdentityResolver:
    """
    Resolves contact identifiers for one tenant's events.

    Writes go through the repository; the caller commits.
    """

    def __init__(
        self,
        db: Session,
        match_window_seconds: int = 300,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.repo = ConnectorRepository(db)
        self.match_window = timedelta(seconds=match_window_seconds)
        self._now = now

    def resolve(
        self,
        tenant_id: UUID,
        remote_jid: str,
        from_me: bool = False,
        push_name: str | None = None,
        alt_jid: str | None = None,
    ) -> ResolvedIdentity:
        """
        Resolve the contact of a session event.

        Args:
            tenant_id: Tenant the event belongs to
            remote_jid: Contact JID from the event key
            from_me: True for outbound echoes; their push name is the sender's own
            push_name: WhatsApp profile name carried by the event
            alt_jid: Phone JID the session reported for an opaque sender

        Returns:
            ResolvedIdentity (phone_number is None when unresolved)
        """
        raw_id = jid_user(remote_jid)
        is_opaque = remote_jid.endswith(LID_SUFFIX)
        inbound_name = None if from_me else push_name

        if not is_opaque and is_phone_number(raw_id):
            if from_me:
                # A send from the operator's phone awaits a reply like any other send
                mapping = self.note_send(tenant_id, raw_id)
                return ResolvedIdentity(raw_id, raw_id, mapping.contact_name, is_opaque, ResolutionMethod.DIRECT)

            # Inbound phone senders never create or refresh reply candidates
            mapping = self.repo.get_mapping(tenant_id, raw_id)
            if mapping is not None and mapping.whatsapp_id:
                self.repo.touch_mapping(mapping, inbound_name)
            name = inbound_name or (mapping.contact_name if mapping else None)
            return ResolvedIdentity(raw_id, raw_id, name, is_opaque, ResolutionMethod.DIRECT)

        mapping = self.repo.get_mapping_by_whatsapp_id(tenant_id, raw_id)
        if mapping:
            self.repo.touch_mapping(mapping, inbound_name)
            return ResolvedIdentity(
                raw_id, mapping.phone_number, mapping.contact_name, is_opaque, ResolutionMethod.MAPPING
            )

        if alt_jid:
            phone = jid_user(alt_jid)
            if is_phone_number(phone):
                mapping = self.learn(tenant_id, raw_id, phone, inbound_name)
                return ResolvedIdentity(
                    raw_id, phone, mapping.contact_name, is_opaque, ResolutionMethod.DIRECTORY
                )

        since = self._now() - self.match_window
        candidates = self.repo.find_unmapped_since(tenant_id, since)

        if len(candidates) == 1:
            mapping = candidates[0]
            mapping.whatsapp_id = raw_id
            self.repo.touch_mapping(mapping, inbound_name)
            logger.info(
                "Bound opaque id to recently active contact",
                extra={"tenant_id": str(tenant_id), "whatsapp_id": raw_id, "phone": mapping.phone_number},
            )
            return ResolvedIdentity(
                raw_id, mapping.phone_number, mapping.contact_name, is_opaque, ResolutionMethod.HEURISTIC
            )

        logger.warning(
            "Could not resolve contact identifier",
            extra={
                "tenant_id": str(tenant_id),
                "whatsapp_id": raw_id,
                "candidates": len(candidates),
                "window_seconds": int(self.match_window.total_seconds()),
            },
        )
        return ResolvedIdentity(raw_id, None, inbound_name, is_opaque, ResolutionMethod.UNRESOLVED)

    def learn(
        self,
        tenant_id: UUID,
        whatsapp_id: str,
        phone_number: str,
        contact_name: str | None = None,
    ) -> WhatsAppMapping:
        """
        Record an authoritative opaque id -> phone binding.

        Any other row of the tenant holding the same opaque id is detached.
        """
        whatsapp_id = jid_user(whatsapp_id)
        detached = self.repo.detach_whatsapp_id(tenant_id, whatsapp_id, keep_phone=phone_number)
        if detached:
            logger.info(
                "Detached opaque id from stale mappings",
                extra={"tenant_id": str(tenant_id), "whatsapp_id": whatsapp_id, "count": detached},
            )

        mapping, _ = self.repo.get_or_create_mapping(
            tenant_id, phone_number, whatsapp_id=whatsapp_id, contact_name=contact_name
        )
        mapping.whatsapp_id = whatsapp_id
        self.repo.touch_mapping(mapping, contact_name)
        return mapping

    def note_send(self, tenant_id: UUID, phone_number: str) -> WhatsAppMapping:
        """
        Record activity for a contact we just sent to.

        Creates the row with a null opaque id when none exists so the
        reply can be matched later; an existing opaque id is never cleared.
        """
        mapping, _ = self.repo.get_or_create_mapping(tenant_id, phone_number)
        self.repo.touch_mapping(mapping)
        return mapping
