"""
CRM Sync

Best-effort mirroring of WhatsApp messages into CRM conversations.

A message whose contact could not be resolved to a phone number is only
synced when exactly one CRM contact carries the sender's WhatsApp name.
Errors are logged and swallowed; WhatsApp delivery never depends on the CRM.
"""

import logging
from collections.abc import Callable
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from basecore.db import session_scope
from ghl_whatsapp.crm.base import CRMClient
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.routing.identity_resolver import ResolvedIdentity
from ghl_whatsapp.routing.tenant_resolver import TenantResolver

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], CRMClient]


class CRMSync:
    """Mirrors messages into the tenant's CRM location."""

    def __init__(self, session_factory: sessionmaker, client_factory: ClientFactory):
        self.session_factory = session_factory
        self.client_factory = client_factory

    async def sync_message(
        self,
        tenant_id: UUID,
        identity: ResolvedIdentity,
        content: str,
        direction: str,
    ) -> bool:
        """
        Post a message to the contact's CRM conversation.

        Returns:
            True if the message was posted
        """
        log_extra = {"tenant_id": str(tenant_id), "direction": direction, "contact": identity.address}
        try:
            with session_scope(self.session_factory) as db:
                subaccount = ConnectorRepository(db).get_subaccount(tenant_id)
                if subaccount is None or not subaccount.crm_connected or not subaccount.crm_location_id:
                    logger.debug("CRM not connected, skipping sync", extra=log_extra)
                    return False
                token = TenantResolver(db).get_crm_token(subaccount)
                location_id = subaccount.crm_location_id

            if not token:
                logger.debug("No CRM token, skipping sync", extra=log_extra)
                return False

            client = self.client_factory(token)
            try:
                contact_id = await self._find_contact(client, location_id, identity)
                if contact_id is None:
                    return False
                conversation_id = await client.find_or_create_conversation(location_id, contact_id)
                await client.post_message(location_id, conversation_id, content, direction)
            finally:
                await client.aclose()

        except Exception as e:
            logger.error(f"CRM sync failed: {e}", extra=log_extra, exc_info=True)
            return False

        logger.info("Synced message to CRM", extra=log_extra)
        return True

    async def _find_contact(self, client: CRMClient, location_id: str, identity: ResolvedIdentity) -> str | None:
        if identity.resolved:
            return await client.find_or_create_contact(location_id, identity.phone_number, identity.contact_name)

        if not identity.contact_name:
            logger.warning(
                "Unresolved contact without a name, CRM sync skipped",
                extra={"whatsapp_id": identity.raw_id},
            )
            return None

        matches = await client.find_contacts_by_name(location_id, identity.contact_name)
        if len(matches) != 1:
            logger.warning(
                "Unresolved contact, name match is not unique, CRM sync skipped",
                extra={"whatsapp_id": identity.raw_id, "matches": len(matches)},
            )
            return None

        logger.info("Matched unresolved contact by name", extra={"whatsapp_id": identity.raw_id})
        return matches[0]["id"]
