"""
Stub Session Client

Development session that keeps everything in memory and makes no network calls.
Useful for local development and testing.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from ghl_whatsapp.errors import SessionError
from ghl_whatsapp.session.base import (
    ConnectionUpdate,
    OutboundPayload,
    QrEvent,
    SessionClient,
    phone_jid,
)

logger = logging.getLogger(__name__)


class StubSessionClient(SessionClient):
    """
    Stub session for development and testing.

    - Records every send in sent_messages
    - Emits a fake QR code on connect (or opens immediately with stored credentials)
    - Answers directory lookups from the `directory` dict
    - Can be told to fail the next N sends
    """

    def __init__(self, auto_qr: bool = True):
        super().__init__()
        self.auto_qr = auto_qr
        self.sent_messages: list[dict[str, Any]] = []
        self.directory: dict[str, str] = {}
        self.credentials: dict[UUID, str] = {}  # tenant -> paired phone
        self.connect_calls: list[UUID] = []
        self.logged_out: list[UUID] = []
        self.closed: list[UUID] = []
        self._failures_left = 0
        self._failure_error = "Simulated failure for testing"

    def fail_next(self, count: int, error: str = "Simulated failure for testing") -> None:
        """Make the next `count` sends raise SessionError."""
        self._failures_left = count
        self._failure_error = error

    async def connect(self, tenant_id: UUID) -> str:
        self.connect_calls.append(tenant_id)

        if tenant_id in self.credentials:
            await self.emit(ConnectionUpdate(
                tenant_id=tenant_id,
                state="open",
                me_jid=phone_jid(self.credentials[tenant_id]),
            ))
            return "connected"

        if self.auto_qr:
            await self.emit(QrEvent(tenant_id=tenant_id, qr_code=f"data:image/png;base64,STUB{uuid4().hex[:8]}"))
            return "qr_ready"
        return "connecting"

    async def pair(self, tenant_id: UUID, phone: str) -> None:
        """Simulate the user scanning the QR code with `phone`."""
        self.credentials[tenant_id] = phone
        await self.emit(ConnectionUpdate(tenant_id=tenant_id, state="open", me_jid=f"{phone}:12@s.whatsapp.net"))

    async def send(self, tenant_id: UUID, destination: str, payload: OutboundPayload) -> str:
        if self._failures_left > 0:
            self._failures_left -= 1
            logger.info("[STUB] Simulated send failure", extra={"to": destination})
            raise SessionError(self._failure_error, code="STUB_SIMULATED_FAILURE", retryable=True)

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        self.sent_messages.append({
            "tenant_id": tenant_id,
            "to": destination,
            "kind": payload.kind.value,
            "text": payload.text,
            "media": payload.media,
            "file_name": payload.file_name,
            "mime_type": payload.mime_type,
            "message_id": message_id,
            "sent_at": datetime.utcnow(),
        })

        logger.info("[STUB] Sending message", extra={"to": destination, "message_id": message_id})
        return message_id

    async def lookup_identifier(self, tenant_id: UUID, phone: str) -> str | None:
        return self.directory.get(phone)

    async def logout(self, tenant_id: UUID) -> None:
        self.logged_out.append(tenant_id)
        self.credentials.pop(tenant_id, None)

    async def close(self, tenant_id: UUID) -> None:
        self.closed.append(tenant_id)

    async def has_stored_credentials(self, tenant_id: UUID) -> bool:
        return tenant_id in self.credentials
