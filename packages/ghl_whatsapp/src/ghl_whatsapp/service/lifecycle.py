"""
Connection Lifecycle

Drives each tenant's session through
disconnected -> connecting -> qr_ready -> connected (and back to disconnected).

All transitions for one tenant run under that tenant's lock, in the order
the session reports them. A disconnect bumps the tenant's generation so a
connect that was already in flight tears its session back down.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from basecore.db import session_scope
from ghl_whatsapp.contracts.event_types import ConnectorEventType
from ghl_whatsapp.errors import ConnectorError, SessionError, SubAccountInactiveError, SubAccountNotFoundError
from ghl_whatsapp.persistence.models import ConnectionStatus, SubAccount
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.service.registry import SessionRegistry, TenantSession
from ghl_whatsapp.session.base import ConnectionUpdate, QrEvent, SessionClient, jid_user

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Connection state machine for all tenants."""

    def __init__(
        self,
        client: SessionClient,
        registry: SessionRegistry,
        notifier,
        session_factory: sessionmaker,
        reconnect_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.registry = registry
        self.notifier = notifier
        self.session_factory = session_factory
        self.reconnect_delay = reconnect_delay
        self._sleep = sleep

    def _load(self, repo: ConnectorRepository, tenant_id: UUID) -> SubAccount:
        subaccount = repo.get_subaccount(tenant_id)
        if subaccount is None:
            raise SubAccountNotFoundError(tenant_id)
        return subaccount

    def _set_status(self, tenant_id: UUID, status: ConnectionStatus, **fields: Any) -> None:
        with session_scope(self.session_factory) as db:
            repo = ConnectorRepository(db)
            repo.update_connection(self._load(repo, tenant_id), status, **fields)

    # =========================================================================
    # Commands
    # =========================================================================

    async def connect(self, tenant_id: UUID) -> dict[str, Any]:
        """
        Start the tenant's session (QR pairing or stored credentials).

        Returns:
            Status dict, as get_status()
        """
        state = self.registry.get_or_create(tenant_id)

        async with state.lock:
            state.cancel_reconnect()

            with session_scope(self.session_factory) as db:
                repo = ConnectorRepository(db)
                subaccount = self._load(repo, tenant_id)
                if not subaccount.is_active:
                    raise SubAccountInactiveError(tenant_id)
                if state.connected:
                    logger.info("Session already connected", extra={"tenant_id": str(tenant_id)})
                    generation = None
                else:
                    repo.update_connection(subaccount, ConnectionStatus.CONNECTING)
                    state.live = True
                    generation = state.generation

        if generation is not None:
            try:
                result = await self.client.connect(tenant_id)
            except SessionError:
                async with state.lock:
                    if state.generation == generation and not state.connected:
                        state.reset()
                        self._set_status(tenant_id, ConnectionStatus.DISCONNECTED)
                raise

            async with state.lock:
                if state.generation != generation:
                    logger.warning(
                        "Disconnect raced a connect, tearing session down",
                        extra={"tenant_id": str(tenant_id)},
                    )
                    await self._teardown(tenant_id, state)
                    self._set_status(tenant_id, ConnectionStatus.DISCONNECTED, phone_number=None)

            logger.info("Session connect started", extra={"tenant_id": str(tenant_id), "gateway_state": result})

        return await self.get_status(tenant_id)

    async def disconnect(self, tenant_id: UUID) -> dict[str, Any]:
        """Log out, wipe credentials and mark the tenant disconnected."""
        state = self.registry.get_or_create(tenant_id)

        async with state.lock:
            state.generation += 1
            state.cancel_reconnect()
            await self._teardown(tenant_id, state)
            self._set_status(tenant_id, ConnectionStatus.DISCONNECTED, phone_number=None)

        logger.info("Session disconnected", extra={"tenant_id": str(tenant_id)})
        await self.notifier.trigger(
            tenant_id,
            ConnectorEventType.CONNECTION_STATUS,
            {"status": ConnectionStatus.DISCONNECTED.value, "reason": "manual"},
        )
        return await self.get_status(tenant_id)

    async def _teardown(self, tenant_id: UUID, state: TenantSession) -> None:
        try:
            await self.client.logout(tenant_id)
        except SessionError as e:
            logger.warning(f"Logout failed during teardown: {e}", extra={"tenant_id": str(tenant_id)})
        state.reset()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, tenant_id: UUID) -> dict[str, Any]:
        """
        Current connection status.

        A stored qr_ready/connecting status with no live session or QR behind
        it (e.g. after a restart) is reset to disconnected here.
        """
        state = self.registry.get(tenant_id)

        with session_scope(self.session_factory) as db:
            repo = ConnectorRepository(db)
            subaccount = self._load(repo, tenant_id)

            has_live = bool(state and (state.live or state.connected))
            has_qr = bool(state and state.qr_code)
            if subaccount.status in (ConnectionStatus.QR_READY.value, ConnectionStatus.CONNECTING.value) and not (
                has_live or has_qr
            ):
                logger.info(
                    f"Resetting stale status {subaccount.status}",
                    extra={"tenant_id": str(tenant_id)},
                )
                repo.update_connection(subaccount, ConnectionStatus.DISCONNECTED)

            return {
                "status": subaccount.status,
                "phone_number": subaccount.phone_number,
                "is_connected": subaccount.status == ConnectionStatus.CONNECTED.value,
                "has_qr": has_qr,
                "qr_code": state.qr_code if state else None,
                "qr_generated_at": state.qr_generated_at.isoformat() if state and state.qr_generated_at else None,
                "last_connected_at": (
                    subaccount.last_connected_at.isoformat() if subaccount.last_connected_at else None
                ),
            }

    async def get_qr_code(self, tenant_id: UUID) -> dict[str, Any]:
        """Latest QR code and when it was generated (both None when there is none)."""
        status = await self.get_status(tenant_id)
        return {
            "status": status["status"],
            "qr_code": status["qr_code"],
            "qr_generated_at": status["qr_generated_at"],
        }

    # =========================================================================
    # Session events
    # =========================================================================

    async def handle_qr(self, event: QrEvent) -> None:
        """A (new) QR code was generated; regenerations stay in qr_ready."""
        state = self.registry.get_or_create(event.tenant_id)
        async with state.lock:
            state.live = True
            state.qr_code = event.qr_code
            state.qr_generated_at = generated_at = datetime.utcnow()
            self._set_status(event.tenant_id, ConnectionStatus.QR_READY)

        logger.info("QR code generated", extra={"tenant_id": str(event.tenant_id)})
        await self.notifier.trigger(
            event.tenant_id,
            ConnectorEventType.CONNECTION_QR,
            {"qr_code": event.qr_code, "qr_generated_at": generated_at.isoformat()},
        )

    async def handle_connection_update(self, event: ConnectionUpdate) -> None:
        if event.state == "open":
            await self._handle_open(event)
        elif event.state == "close":
            await self._handle_close(event)
        elif event.state == "connecting":
            state = self.registry.get_or_create(event.tenant_id)
            async with state.lock:
                if not state.connected and not state.qr_code:
                    self._set_status(event.tenant_id, ConnectionStatus.CONNECTING)
        else:
            logger.debug(f"Ignoring connection state {event.state}", extra={"tenant_id": str(event.tenant_id)})

    async def _handle_open(self, event: ConnectionUpdate) -> None:
        tenant_id = event.tenant_id
        state = self.registry.get_or_create(tenant_id)
        phone = jid_user(event.me_jid) if event.me_jid else None

        async with state.lock:
            with session_scope(self.session_factory) as db:
                repo = ConnectorRepository(db)
                subaccount = self._load(repo, tenant_id)
                owner = repo.find_connected_with_phone(phone, exclude_id=tenant_id) if phone else None

                if owner is None:
                    repo.update_connection(
                        subaccount,
                        ConnectionStatus.CONNECTED,
                        phone_number=phone,
                        last_connected_at=datetime.utcnow(),
                    )
                    state.live = True
                    state.connected = True
                    state.clear_qr()

            if owner is not None:
                logger.warning(
                    f"Phone {phone} is already connected to another sub-account",
                    extra={"tenant_id": str(tenant_id), "owner_id": str(owner.id)},
                )
                await self._teardown(tenant_id, state)
                self._set_status(tenant_id, ConnectionStatus.DISCONNECTED, phone_number=None)

        if owner is not None:
            await self.notifier.trigger(
                tenant_id,
                ConnectorEventType.CONNECTION_STATUS,
                {
                    "status": "error",
                    "error": "phone_already_connected",
                    "message": f"This WhatsApp number ({phone}) is already connected to another sub-account",
                },
            )
            return

        logger.info("WhatsApp connected", extra={"tenant_id": str(tenant_id), "phone": phone})
        await self.notifier.trigger(
            tenant_id,
            ConnectorEventType.CONNECTION_STATUS,
            {"status": ConnectionStatus.CONNECTED.value, "phone_number": phone},
        )

    async def _handle_close(self, event: ConnectionUpdate) -> None:
        tenant_id = event.tenant_id
        state = self.registry.get_or_create(tenant_id)

        async with state.lock:
            was_live = state.live
            state.connected = False

            if event.is_logged_out:
                logger.warning("Session logged out, clearing credentials", extra={"tenant_id": str(tenant_id)})
                await self._teardown(tenant_id, state)
                self._set_status(tenant_id, ConnectionStatus.DISCONNECTED, phone_number=None)
                reason = "logged_out"
            else:
                self._set_status(tenant_id, ConnectionStatus.DISCONNECTED)
                reason = event.reason or f"connection_closed_{event.status_code}"
                if was_live:
                    logger.info(
                        f"Connection dropped, reconnecting in {self.reconnect_delay}s",
                        extra={"tenant_id": str(tenant_id), "status_code": event.status_code},
                    )
                    state.cancel_reconnect()
                    state.reconnect_task = asyncio.create_task(
                        self._reconnect(tenant_id), name=f"reconnect-{tenant_id}"
                    )

        await self.notifier.trigger(
            tenant_id,
            ConnectorEventType.CONNECTION_STATUS,
            {"status": ConnectionStatus.DISCONNECTED.value, "reason": reason},
        )

    async def _reconnect(self, tenant_id: UUID) -> None:
        await self._sleep(self.reconnect_delay)
        try:
            await self.connect(tenant_id)
        except SessionError as e:
            logger.error(f"Reconnect failed: {e}", extra={"tenant_id": str(tenant_id)})
            state = self.registry.get(tenant_id)
            if e.retryable and state is not None:
                state.live = True
                state.reconnect_task = asyncio.create_task(
                    self._reconnect(tenant_id), name=f"reconnect-{tenant_id}"
                )
        except ConnectorError as e:
            logger.error(f"Reconnect abandoned: {e}", extra={"tenant_id": str(tenant_id)})

    # =========================================================================
    # Startup
    # =========================================================================

    async def restore_sessions(self) -> int:
        """
        Reconnect every sub-account persisted as connected.

        Sub-accounts without stored credentials are marked disconnected.

        Returns:
            Number of sessions restored
        """
        with session_scope(self.session_factory) as db:
            tenant_ids = [s.id for s in ConnectorRepository(db).get_subaccounts_by_status(ConnectionStatus.CONNECTED)]

        restored = 0
        for tenant_id in tenant_ids:
            try:
                if not await self.client.has_stored_credentials(tenant_id):
                    logger.info("No stored credentials, marking disconnected", extra={"tenant_id": str(tenant_id)})
                    self._set_status(tenant_id, ConnectionStatus.DISCONNECTED)
                    continue
                await self.connect(tenant_id)
                restored += 1
            except ConnectorError as e:
                logger.error(f"Failed to restore session: {e}", extra={"tenant_id": str(tenant_id)})

        logger.info(f"Restored {restored} session(s)", extra={"candidates": len(tenant_ids)})
        return restored
