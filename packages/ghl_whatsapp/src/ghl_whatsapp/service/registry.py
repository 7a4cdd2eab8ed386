"""
Session Registry

In-memory state for each tenant's live session, owned by the connector.
Everything here is process-local and rebuilt by restore_sessions() on startup.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID


@dataclass
class TenantSession:
    """Live session state for one tenant."""

    tenant_id: UUID
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    live: bool = False  # a session was started and not torn down
    connected: bool = False
    qr_code: str | None = None
    qr_generated_at: datetime | None = None
    reconnect_task: asyncio.Task | None = None
    generation: int = 0  # bumped by disconnect to invalidate in-flight connects

    def clear_qr(self) -> None:
        self.qr_code = None
        self.qr_generated_at = None

    def reset(self) -> None:
        self.live = False
        self.connected = False
        self.clear_qr()

    def cancel_reconnect(self) -> None:
        task = self.reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self.reconnect_task = None


class SessionRegistry:
    """Per-tenant session state keyed by tenant id."""

    def __init__(self) -> None:
        self._sessions: dict[UUID, TenantSession] = {}

    def get(self, tenant_id: UUID) -> TenantSession | None:
        return self._sessions.get(tenant_id)

    def get_or_create(self, tenant_id: UUID) -> TenantSession:
        session = self._sessions.get(tenant_id)
        if session is None:
            session = TenantSession(tenant_id=tenant_id)
            self._sessions[tenant_id] = session
        return session

    def is_connected(self, tenant_id: UUID) -> bool:
        session = self._sessions.get(tenant_id)
        return bool(session and session.connected)

    def remove(self, tenant_id: UUID) -> TenantSession | None:
        session = self._sessions.pop(tenant_id, None)
        if session is not None:
            session.cancel_reconnect()
        return session

    def tenants(self) -> list[UUID]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)
