"""
Connector Repository

Repository pattern for connector database operations.
Inserts on unique keys run inside a SAVEPOINT so concurrent handlers racing
on the same key converge on the existing row instead of failing the outer
transaction. Callers own commit.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ghl_whatsapp.persistence.models import (
    ConnectionStatus,
    Message,
    MessageStatus,
    SubAccount,
    WebhookSubscription,
    WhatsAppMapping,
)


class ConnectorRepository:
    """Repository for connector database operations."""

    def __init__(self, db: Session):
        self.db = db

    def _insert_or_get(self, obj: Any, lookup) -> tuple[Any, bool]:
        """Insert obj; on a unique violation return the row that won instead."""
        try:
            with self.db.begin_nested():
                self.db.add(obj)
                self.db.flush()
            return obj, True
        except IntegrityError:
            existing = lookup()
            if existing is None:
                raise
            return existing, False

    # =========================================================================
    # Sub-accounts
    # =========================================================================

    def get_subaccount(self, tenant_id: UUID) -> SubAccount | None:
        """Get sub-account by ID."""
        return self.db.query(SubAccount).filter(SubAccount.id == tenant_id).first()

    def get_subaccount_by_api_key(self, api_key: str) -> SubAccount | None:
        """Get an active sub-account by its API key."""
        return (
            self.db.query(SubAccount)
            .filter(
                SubAccount.api_key == api_key,
                SubAccount.is_active == True,  # noqa: E712
            )
            .first()
        )

    def get_subaccount_by_location(self, location_id: str) -> SubAccount | None:
        """Get the sub-account bound to a CRM location."""
        return (
            self.db.query(SubAccount)
            .filter(
                SubAccount.crm_location_id == location_id,
                SubAccount.is_active == True,  # noqa: E712
            )
            .first()
        )

    def list_subaccounts(self) -> list[SubAccount]:
        """List all sub-accounts, newest first."""
        return self.db.query(SubAccount).order_by(SubAccount.created_at.desc()).all()

    def get_subaccounts_by_status(self, status: ConnectionStatus) -> list[SubAccount]:
        """Get active sub-accounts persisted with a given connection status."""
        return (
            self.db.query(SubAccount)
            .filter(
                SubAccount.status == status.value,
                SubAccount.is_active == True,  # noqa: E712
            )
            .all()
        )

    def find_connected_with_phone(self, phone_number: str, exclude_id: UUID) -> SubAccount | None:
        """Find another sub-account already connected with this phone number."""
        return (
            self.db.query(SubAccount)
            .filter(
                SubAccount.phone_number == phone_number,
                SubAccount.status == ConnectionStatus.CONNECTED.value,
                SubAccount.id != exclude_id,
            )
            .first()
        )

    def create_subaccount(
        self,
        name: str,
        is_paid: bool = False,
        crm_location_id: str | None = None,
        crm_access_token: str | None = None,
    ) -> SubAccount:
        """Create a new sub-account."""
        subaccount = SubAccount(
            name=name,
            is_paid=is_paid,
            crm_location_id=crm_location_id,
            crm_access_token=crm_access_token,
            crm_connected=bool(crm_location_id and crm_access_token),
        )
        self.db.add(subaccount)
        self.db.flush()
        return subaccount

    def update_connection(self, subaccount: SubAccount, status: ConnectionStatus, **fields: Any) -> None:
        """Set connection status plus any related fields (phone_number, last_connected_at)."""
        subaccount.status = status.value
        for name, value in fields.items():
            setattr(subaccount, name, value)
        subaccount.updated_at = datetime.utcnow()

    # =========================================================================
    # Identity mappings
    # =========================================================================

    def get_mapping(self, tenant_id: UUID, phone_number: str) -> WhatsAppMapping | None:
        """Get mapping by tenant and phone number."""
        return (
            self.db.query(WhatsAppMapping)
            .filter(
                WhatsAppMapping.tenant_id == tenant_id,
                WhatsAppMapping.phone_number == phone_number,
            )
            .first()
        )

    def get_mapping_by_whatsapp_id(self, tenant_id: UUID, whatsapp_id: str) -> WhatsAppMapping | None:
        """Get the most recently active mapping holding an opaque WhatsApp id."""
        return (
            self.db.query(WhatsAppMapping)
            .filter(
                WhatsAppMapping.tenant_id == tenant_id,
                WhatsAppMapping.whatsapp_id == whatsapp_id,
            )
            .order_by(WhatsAppMapping.last_activity_at.desc())
            .first()
        )

    def find_unmapped_since(self, tenant_id: UUID, since: datetime) -> list[WhatsAppMapping]:
        """Mappings with no opaque id yet and activity at or after `since`."""
        return (
            self.db.query(WhatsAppMapping)
            .filter(
                WhatsAppMapping.tenant_id == tenant_id,
                WhatsAppMapping.whatsapp_id.is_(None),
                WhatsAppMapping.last_activity_at >= since,
            )
            .all()
        )

    def list_mappings(self, tenant_id: UUID, limit: int = 100) -> list[WhatsAppMapping]:
        """List mappings for a tenant, most recently active first."""
        return (
            self.db.query(WhatsAppMapping)
            .filter(WhatsAppMapping.tenant_id == tenant_id)
            .order_by(WhatsAppMapping.last_activity_at.desc())
            .limit(limit)
            .all()
        )

    def get_or_create_mapping(
        self,
        tenant_id: UUID,
        phone_number: str,
        whatsapp_id: str | None = None,
        contact_name: str | None = None,
    ) -> tuple[WhatsAppMapping, bool]:
        """
        Get existing mapping or create a new one.

        Returns:
            Tuple of (mapping, created) where created is True if new.
        """
        mapping = self.get_mapping(tenant_id, phone_number)
        if mapping:
            return mapping, False

        mapping = WhatsAppMapping(
            tenant_id=tenant_id,
            phone_number=phone_number,
            whatsapp_id=whatsapp_id,
            contact_name=contact_name,
            last_activity_at=datetime.utcnow(),
        )
        return self._insert_or_get(mapping, lambda: self.get_mapping(tenant_id, phone_number))

    def detach_whatsapp_id(self, tenant_id: UUID, whatsapp_id: str, keep_phone: str) -> int:
        """Clear an opaque id from every row except the authoritative one."""
        stale = (
            self.db.query(WhatsAppMapping)
            .filter(
                WhatsAppMapping.tenant_id == tenant_id,
                WhatsAppMapping.whatsapp_id == whatsapp_id,
                WhatsAppMapping.phone_number != keep_phone,
            )
            .all()
        )
        for mapping in stale:
            mapping.whatsapp_id = None
        return len(stale)

    def touch_mapping(self, mapping: WhatsAppMapping, contact_name: str | None = None) -> None:
        """Refresh activity timestamp and optionally the display name."""
        now = datetime.utcnow()
        mapping.last_activity_at = now
        mapping.updated_at = now
        if contact_name:
            mapping.contact_name = contact_name

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message(self, tenant_id: UUID, provider_message_id: str) -> Message | None:
        """Get message by tenant and provider message ID."""
        return (
            self.db.query(Message)
            .filter(
                Message.tenant_id == tenant_id,
                Message.provider_message_id == provider_message_id,
            )
            .first()
        )

    def is_message_processed(self, tenant_id: UUID, provider_message_id: str) -> bool:
        """Check if a provider message has already been recorded (idempotency)."""
        return self.get_message(tenant_id, provider_message_id) is not None

    def create_message(
        self,
        tenant_id: UUID,
        provider_message_id: str,
        direction: str,
        from_number: str | None,
        to_number: str | None,
        content_type: str,
        content: str | None,
        status: MessageStatus,
        media_url: str | None = None,
        error_message: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> tuple[Message, bool]:
        """
        Record a message unless one already exists for the dedup key.

        Returns:
            Tuple of (message, created). created is False for a replay.
        """
        message = Message(
            tenant_id=tenant_id,
            provider_message_id=provider_message_id,
            direction=direction,
            from_number=from_number,
            to_number=to_number,
            content_type=content_type,
            content=content,
            media_url=media_url,
            status=status.value,
            error_message=error_message,
            extra=extra or {},
        )
        return self._insert_or_get(message, lambda: self.get_message(tenant_id, provider_message_id))

    def list_messages(self, tenant_id: UUID, limit: int = 50) -> list[Message]:
        """List recent messages for a tenant."""
        return (
            self.db.query(Message)
            .filter(Message.tenant_id == tenant_id)
            .order_by(Message.created_at.desc())
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def get_webhook(self, webhook_id: UUID) -> WebhookSubscription | None:
        """Get webhook subscription by ID."""
        return self.db.query(WebhookSubscription).filter(WebhookSubscription.id == webhook_id).first()

    def get_active_webhook(self, tenant_id: UUID) -> WebhookSubscription | None:
        """Get the active webhook subscription for a tenant."""
        return (
            self.db.query(WebhookSubscription)
            .filter(
                WebhookSubscription.tenant_id == tenant_id,
                WebhookSubscription.is_active == True,  # noqa: E712
            )
            .first()
        )

    def create_webhook(
        self,
        tenant_id: UUID,
        url: str,
        secret: str | None = None,
        events: list[str] | None = None,
    ) -> WebhookSubscription:
        """Create a webhook subscription."""
        webhook = WebhookSubscription(
            tenant_id=tenant_id,
            url=url,
            secret=secret,
            events=events or ["*"],
        )
        self.db.add(webhook)
        return webhook
