"""
Session Message Handler

Processes message events observed on a tenant's session:
1. Classifies (drops noise, undecryptable events and replays)
2. Resolves the contact identity
3. Persists the message record (unresolved contacts included)
4. Notifies webhooks
5. Mirrors to the CRM, unless it is the echo of our own send
"""

import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from basecore.db import session_scope
from ghl_whatsapp.contracts.event_types import ConnectorEventType
from ghl_whatsapp.crm.sync import CRMSync
from ghl_whatsapp.persistence.models import MessageDirection, MessageStatus
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.routing.identity_resolver import IdentityResolver
from ghl_whatsapp.service.classifier import Drop, MessageClassifier, Outbound
from ghl_whatsapp.service.origin_tracker import OriginTracker
from ghl_whatsapp.service.outbound_handler import message_to_dict
from ghl_whatsapp.session.base import MessageEvent

logger = logging.getLogger(__name__)


class InboundHandler:
    """
    Handles message events from WhatsApp sessions.

    Responsibilities:
    - Dedup and classify events
    - Keep the identity cache current
    - Persist messages
    - Suppress CRM feedback loops for our own sends
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        origin: OriginTracker,
        crm_sync: CRMSync,
        notifier,
        match_window_seconds: int = 300,
    ):
        self.session_factory = session_factory
        self.origin = origin
        self.crm_sync = crm_sync
        self.notifier = notifier
        self.match_window_seconds = match_window_seconds

    async def handle(self, event: MessageEvent) -> dict[str, Any]:
        """
        Process a single message event.

        Returns:
            Processing result dict
        """
        tenant_id = event.tenant_id
        result: dict[str, Any] = {"message_id": event.provider_message_id, "status": "processed"}

        with session_scope(self.session_factory) as db:
            classification = MessageClassifier(db).classify(event)
            if isinstance(classification, Drop):
                return {**result, "status": "skipped", "reason": classification.reason}

            outbound = isinstance(classification, Outbound)
            content = classification.content

            identity = IdentityResolver(db, self.match_window_seconds).resolve(
                tenant_id,
                event.remote_jid,
                from_me=event.from_me,
                push_name=event.push_name,
                alt_jid=event.alt_jid,
            )

            repo = ConnectorRepository(db)
            subaccount = repo.get_subaccount(tenant_id)
            own_number = subaccount.phone_number if subaccount else None

            direction = MessageDirection.OUTBOUND if outbound else MessageDirection.INBOUND
            message, created = repo.create_message(
                tenant_id=tenant_id,
                provider_message_id=event.provider_message_id,
                direction=direction.value,
                from_number=own_number if outbound else identity.address,
                to_number=identity.address if outbound else own_number,
                content_type=content.kind.value,
                content=content.text,
                media_url=content.media_url,
                status=MessageStatus.SENT if outbound else MessageStatus.DELIVERED,
                extra={
                    "raw_message": event.raw,
                    "source": "whatsapp_direct" if outbound else "whatsapp",
                    "resolution": identity.method,
                    "whatsapp_id": identity.raw_id if identity.is_opaque else None,
                    "push_name": event.push_name,
                },
            )
            if not created:
                return {**result, "status": "skipped", "reason": "duplicate"}

            data = message_to_dict(message)
            data["contact_name"] = identity.contact_name
            data["resolved"] = identity.resolved

        result.update(direction=direction.value, contact=identity.address, resolution=identity.method)

        await self.notifier.trigger(
            tenant_id,
            ConnectorEventType.MESSAGE_SENT if outbound else ConnectorEventType.MESSAGE_RECEIVED,
            data,
        )

        if outbound and self.origin.is_origin(tenant_id, identity.address):
            logger.debug(
                "Echo of our own send, CRM sync skipped",
                extra={"tenant_id": str(tenant_id), "message_id": event.provider_message_id},
            )
            return {**result, "crm_sync": "skipped_origin"}

        if not identity.resolved and outbound:
            logger.warning(
                "Outbound message to unresolved contact, CRM sync skipped",
                extra={"tenant_id": str(tenant_id), "whatsapp_id": identity.raw_id},
            )
            return {**result, "crm_sync": "skipped_unresolved"}

        synced = await self.crm_sync.sync_message(tenant_id, identity, content.text, direction.value)
        return {**result, "crm_sync": "synced" if synced else "skipped"}
