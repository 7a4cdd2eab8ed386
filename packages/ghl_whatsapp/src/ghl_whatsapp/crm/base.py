"""
CRM Client Base

Abstract interface for the CRM the connector mirrors conversations into.
Implementations: GoHighLevel.
"""

from abc import ABC, abstractmethod
from typing import Any


class CRMClient(ABC):
    """
    Abstract interface for a CRM API client, bound to one access token.
    """

    @abstractmethod
    async def find_or_create_contact(self, location_id: str, phone: str, name: str | None = None) -> str:
        """
        Find a contact by phone, creating it when missing.

        Returns:
            Contact ID
        """
        ...

    @abstractmethod
    async def find_contacts_by_name(self, location_id: str, name: str) -> list[dict[str, Any]]:
        """Contacts whose name equals `name` (case-insensitive)."""
        ...

    @abstractmethod
    async def find_or_create_conversation(self, location_id: str, contact_id: str) -> str:
        """
        Find the contact's conversation, creating it when missing.

        Returns:
            Conversation ID
        """
        ...

    @abstractmethod
    async def post_message(
        self,
        location_id: str,
        conversation_id: str,
        content: str,
        direction: str,
    ) -> str | None:
        """
        Add a message to a conversation.

        Returns:
            CRM message ID, if the CRM returned one
        """
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        return None
