"""
Evolution API Session Client

Session gateway backed by Evolution API (Baileys-based WhatsApp Web integration).
Each tenant owns one Evolution instance named after its sub-account id.
Session events reach us through the Evolution webhook, see webhook.py.

Documentation: https://doc.evolution-api.com/
"""

import logging
from typing import Any
from uuid import UUID

import httpx

from ghl_whatsapp.errors import SessionError
from ghl_whatsapp.persistence.models import ContentType, instance_name_for
from ghl_whatsapp.session.base import OutboundPayload, QrEvent, SessionClient, jid_user

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ContentType.IMAGE: "image",
    ContentType.VIDEO: "video",
    ContentType.DOCUMENT: "document",
}


class EvolutionSessionClient(SessionClient):
    """
    Evolution API session gateway.

    The gateway keeps sockets and credentials server-side; this client only
    drives instances over REST.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        webhook_url: str | None = None,
        timeout: float = 30.0,
    ):
        """
        Initialize Evolution API client.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: Global API key for authentication
            webhook_url: URL Evolution should post session events to
            timeout: HTTP request timeout
        """
        super().__init__()
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
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
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method.upper(), url, json=json_data)
        except httpx.RequestError as e:
            logger.error(f"Evolution request failed: {e}", extra={"endpoint": endpoint})
            raise SessionError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"raw": response.text}

        if response.status_code >= 400:
            error = None
            if isinstance(response_data, dict):
                error = response_data.get("error") or response_data.get("message") or response_data.get("response")
            raise SessionError(
                message=str(error or "Unknown error"),
                code=str(response.status_code),
                details=response_data if isinstance(response_data, dict) else {"response": response_data},
                retryable=response.status_code >= 500,
            )

        return response_data

    async def connect(self, tenant_id: UUID) -> str:
        """Create the instance if needed, then ask for a QR code or resume."""
        instance = instance_name_for(tenant_id)

        if not await self._instance_exists(instance):
            payload: dict[str, Any] = {
                "instanceName": instance,
                "qrcode": True,
                "integration": "WHATSAPP-BAILEYS",
            }
            if self.webhook_url:
                payload["webhook"] = {
                    "url": self.webhook_url,
                    "byEvents": False,
                    "events": [
                        "QRCODE_UPDATED",
                        "CONNECTION_UPDATE",
                        "MESSAGES_UPSERT",
                        "MESSAGES_UPDATE",
                        "CONTACTS_UPSERT",
                        "CONTACTS_UPDATE",
                    ],
                }
            await self._make_request("POST", "/instance/create", payload)
            logger.info("Created Evolution instance", extra={"instance": instance})

        response = await self._make_request("GET", f"/instance/connect/{instance}")

        state = (response.get("instance") or {}).get("state") if isinstance(response, dict) else None
        if state == "open":
            return "connected"

        qr_code = response.get("base64") if isinstance(response, dict) else None
        if qr_code:
            await self.emit(QrEvent(tenant_id=tenant_id, qr_code=qr_code))
            return "qr_ready"

        return "connecting"

    async def _instance_exists(self, instance: str) -> bool:
        try:
            response = await self._make_request("GET", f"/instance/fetchInstances?instanceName={instance}")
        except SessionError as e:
            if e.code == "404":
                return False
            raise
        return bool(response)

    async def send(self, tenant_id: UUID, destination: str, payload: OutboundPayload) -> str:
        """Send text or media through the tenant's instance."""
        instance = instance_name_for(tenant_id)
        number = jid_user(destination) if destination.endswith("@s.whatsapp.net") else destination

        if payload.kind == ContentType.TEXT:
            endpoint = f"/message/sendText/{instance}"
            body: dict[str, Any] = {"number": number, "text": payload.text}
        elif payload.kind == ContentType.AUDIO:
            endpoint = f"/message/sendWhatsAppAudio/{instance}"
            body = {"number": number, "audio": payload.media}
        elif payload.kind in MEDIA_TYPES:
            endpoint = f"/message/sendMedia/{instance}"
            body = {
                "number": number,
                "mediatype": MEDIA_TYPES[payload.kind],
                "media": payload.media,
            }
            if payload.mime_type:
                body["mimetype"] = payload.mime_type
            if payload.text:
                body["caption"] = payload.text
            if payload.file_name:
                body["fileName"] = payload.file_name
        else:
            raise SessionError(f"Unsupported message type: {payload.kind.value}", code="UNSUPPORTED_TYPE")

        response = await self._make_request("POST", endpoint, body)
        message_id = (response.get("key") or {}).get("id") or response.get("id")
        if not message_id:
            raise SessionError("Gateway returned no message id", code="NO_MESSAGE_ID", details=response)

        logger.info(
            "Sent message via Evolution API",
            extra={"to": number, "message_id": message_id, "instance": instance, "kind": payload.kind.value},
        )
        return message_id

    async def lookup_identifier(self, tenant_id: UUID, phone: str) -> str | None:
        """Directory lookup through /chat/whatsappNumbers."""
        instance = instance_name_for(tenant_id)
        response = await self._make_request(
            "POST", f"/chat/whatsappNumbers/{instance}", {"numbers": [phone]}
        )
        for entry in response or []:
            if entry.get("exists") and entry.get("jid"):
                return entry["jid"]
        return None

    async def logout(self, tenant_id: UUID) -> None:
        """Log out and delete the instance so its credentials are gone."""
        instance = instance_name_for(tenant_id)
        try:
            await self._make_request("DELETE", f"/instance/logout/{instance}")
        except SessionError as e:
            # Already logged out instances answer 4xx; delete still has to run
            if e.retryable:
                raise
            logger.info(f"Logout skipped: {e}", extra={"instance": instance})
        await self._make_request("DELETE", f"/instance/delete/{instance}")
        logger.info("Deleted Evolution instance", extra={"instance": instance})

    async def close(self, tenant_id: UUID) -> None:
        """Nothing to drop locally; the gateway reconnects its own socket."""
        logger.debug("Close requested", extra={"instance": instance_name_for(tenant_id)})

    async def has_stored_credentials(self, tenant_id: UUID) -> bool:
        """An existing instance holds the paired credentials."""
        return await self._instance_exists(instance_name_for(tenant_id))
