"""
GoHighLevel CRM Client

REST client for the GoHighLevel (LeadConnector) v2 API, bound to one
location access token.

Documentation: https://highlevel.stoplight.io/docs/integrations/
"""

import logging
from typing import Any

import httpx

from ghl_whatsapp.crm.base import CRMClient
from ghl_whatsapp.errors import CRMError
from ghl_whatsapp.routing.identity_resolver import clean_phone

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://services.leadconnectorhq.com"
DEFAULT_API_VERSION = "2021-07-28"


def phones_match(a: str, b: str) -> bool:
    """Equal, or one is the other with a country code in front."""
    a, b = clean_phone(a), clean_phone(b)
    if not a or not b:
        return False
    return a == b or a.endswith(b) or b.endswith(a)


class GoHighLevelClient(CRMClient):
    """GoHighLevel API client."""

    def __init__(
        self,
        access_token: str,
        api_url: str = DEFAULT_API_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self.transport,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Version": self.api_version,
                    "Accept": "application/json",
                },
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request."""
        client = await self._get_client()
        try:
            response = await client.request(method, endpoint, params=params, json=json_data)
        except httpx.RequestError as e:
            raise CRMError(f"HTTP request failed: {e}", code="HTTP_ERROR", retryable=True) from e

        if response.status_code >= 400:
            try:
                details = response.json()
            except ValueError:
                details = {"raw": response.text}
            raise CRMError(
                str(details.get("message") or details.get("error") or "Unknown error"),
                code=str(response.status_code),
                details=details,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json() if response.content else {}

    # =========================================================================
    # Contacts
    # =========================================================================

    async def search_contacts(self, location_id: str, query: str) -> list[dict[str, Any]]:
        response = await self._make_request(
            "GET", "/contacts/", params={"locationId": location_id, "query": query}
        )
        return response.get("contacts") or []

    async def get_contact_by_phone(self, location_id: str, phone: str) -> dict[str, Any] | None:
        for contact in await self.search_contacts(location_id, phone):
            if phones_match(contact.get("phone") or "", phone):
                return contact
        return None

    async def create_contact(self, location_id: str, phone: str, name: str | None = None) -> dict[str, Any]:
        response = await self._make_request(
            "POST",
            "/contacts/",
            json_data={
                "locationId": location_id,
                "phone": f"+{clean_phone(phone)}",
                "name": name or f"WhatsApp {phone}",
                "source": "WhatsApp",
            },
        )
        contact = response.get("contact") or response
        logger.info("Created CRM contact", extra={"location_id": location_id, "contact_id": contact.get("id")})
        return contact

    async def find_or_create_contact(self, location_id: str, phone: str, name: str | None = None) -> str:
        contact = await self.get_contact_by_phone(location_id, phone)
        if contact is None:
            contact = await self.create_contact(location_id, phone, name)
        return contact["id"]

    async def find_contacts_by_name(self, location_id: str, name: str) -> list[dict[str, Any]]:
        wanted = name.strip().lower()
        matches = []
        for contact in await self.search_contacts(location_id, name):
            full_name = contact.get("contactName") or " ".join(
                part for part in (contact.get("firstName"), contact.get("lastName")) if part
            )
            if (full_name or "").strip().lower() == wanted:
                matches.append(contact)
        return matches

    # =========================================================================
    # Conversations
    # =========================================================================

    async def find_or_create_conversation(self, location_id: str, contact_id: str) -> str:
        response = await self._make_request(
            "GET", "/conversations/search", params={"locationId": location_id, "contactId": contact_id}
        )
        conversations = response.get("conversations") or []
        if conversations:
            return conversations[0]["id"]

        response = await self._make_request(
            "POST", "/conversations/", json_data={"locationId": location_id, "contactId": contact_id}
        )
        conversation = response.get("conversation") or response
        return conversation["id"]

    async def post_message(
        self,
        location_id: str,
        conversation_id: str,
        content: str,
        direction: str,
    ) -> str | None:
        response = await self._make_request(
            "POST",
            "/conversations/messages/inbound",
            json_data={
                "type": "SMS",
                "conversationId": conversation_id,
                "message": content,
                "body": content,
                "contentType": "text/plain",
                "direction": direction,
                "messageType": "SMS",
            },
        )
        return response.get("messageId")
