"""
Tenant Resolver

Resolves the sub-account behind incoming traffic: gateway webhooks carry an
instance name, CRM webhooks carry a location id.
"""

import logging
from uuid import UUID

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from basecore.settings import get_settings
from ghl_whatsapp.persistence.models import SubAccount
from ghl_whatsapp.persistence.repo import ConnectorRepository

logger = logging.getLogger(__name__)

INSTANCE_PREFIX = "subaccount_"


def tenant_id_from_instance(instance_name: str) -> UUID | None:
    """Parse the tenant id out of a gateway instance name."""
    if not instance_name or not instance_name.startswith(INSTANCE_PREFIX):
        return None
    try:
        return UUID(instance_name[len(INSTANCE_PREFIX):])
    except ValueError:
        return None


def encrypt_secret(value: str, encryption_key: str | None = None) -> str:
    """Encrypt a secret for storage (plaintext when no key is configured)."""
    key = encryption_key if encryption_key is not None else get_settings().ENCRYPTION_KEY
    if not key:
        return value
    return Fernet(key.encode()).encrypt(value.encode()).decode()


def decrypt_secret(value: str, encryption_key: str | None = None) -> str:
    """Reverse encrypt_secret."""
    key = encryption_key if encryption_key is not None else get_settings().ENCRYPTION_KEY
    if not key:
        return value
    try:
        return Fernet(key.encode()).decrypt(value.encode()).decode()
    except InvalidToken:
        # Rows written before the key was configured
        logger.warning("Stored secret is not encrypted with the configured key")
        return value


class TenantResolver:
    """Resolves sub-accounts from webhook data."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = ConnectorRepository(db)

    def resolve_from_instance_name(self, instance_name: str) -> SubAccount | None:
        """
        Resolve sub-account from Evolution API instance name.

        Args:
            instance_name: Evolution API instance name from webhook

        Returns:
            Sub-account if found and active, None otherwise
        """
        tenant_id = tenant_id_from_instance(instance_name)
        subaccount = self.repo.get_subaccount(tenant_id) if tenant_id else None

        if subaccount and subaccount.is_active:
            logger.debug(
                "Resolved tenant from instance_name",
                extra={"instance_name": instance_name, "tenant_id": str(subaccount.id)},
            )
            return subaccount

        logger.warning(f"No active sub-account found for instance_name: {instance_name}")
        return None

    def resolve_from_location(self, location_id: str) -> SubAccount | None:
        """Resolve sub-account bound to a CRM location."""
        subaccount = self.repo.get_subaccount_by_location(location_id)
        if not subaccount:
            logger.warning(f"No sub-account found for CRM location {location_id}")
        return subaccount

    def get_crm_token(self, subaccount: SubAccount) -> str | None:
        """Decrypted CRM access token, if the sub-account has one."""
        if not subaccount.crm_access_token:
            return None
        return decrypt_secret(subaccount.crm_access_token)
