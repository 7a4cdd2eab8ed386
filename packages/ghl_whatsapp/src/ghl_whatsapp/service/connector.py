"""
WhatsApp Connector

Owns every per-tenant component (session registry, outbound queues, origin
marks) and exposes the operations the API layer calls:

connect, disconnect, get_status, get_qr_code, send_message, queue_message,
set_rate_limit, get_queue_status, pause_queue, resume_queue, clear_queue.

Session events from any gateway enter through handle_session_event().
"""

import asyncio
import logging
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.orm import sessionmaker

from basecore.db import session_scope
from basecore.settings import Settings, get_settings
from ghl_whatsapp.contracts.event_types import ConnectorEventType
from ghl_whatsapp.crm.sync import ClientFactory, CRMSync
from ghl_whatsapp.errors import SubAccountNotFoundError
from ghl_whatsapp.notifications.producer import EventStreamProducer
from ghl_whatsapp.notifications.webhook import WebhookDispatcher
from ghl_whatsapp.persistence.models import ContentType, Message
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.routing.identity_resolver import IdentityResolver
from ghl_whatsapp.service.inbound_handler import InboundHandler
from ghl_whatsapp.service.lifecycle import ConnectionManager
from ghl_whatsapp.service.message_queue import OutboundQueue, QueuedMessage, RateLimitConfig
from ghl_whatsapp.service.origin_tracker import OriginTracker
from ghl_whatsapp.service.outbound_handler import OutboundSender
from ghl_whatsapp.service.registry import SessionRegistry
from ghl_whatsapp.session.base import (
    ConnectionUpdate,
    IdentityHint,
    MessageEvent,
    QrEvent,
    SessionClient,
    SessionEvent,
)

logger = logging.getLogger(__name__)


class WhatsAppConnector:
    """
    Supervising component for all tenants' WhatsApp sessions.

    Args:
        client: Session gateway shared by all tenants
        session_factory: SQLAlchemy sessionmaker
        crm_client_factory: Builds a CRM client from an access token
        settings: Defaults to basecore settings
        producer: Optional Redis stream producer for connector events
        webhook_transport: httpx transport for tenant webhooks (tests)
    """

    def __init__(
        self,
        client: SessionClient,
        session_factory: sessionmaker,
        crm_client_factory: ClientFactory,
        settings: Settings | None = None,
        producer: EventStreamProducer | None = None,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.session_factory = session_factory

        self.registry = SessionRegistry()
        self.origin = OriginTracker(ttl_seconds=self.settings.ORIGIN_TTL_SECONDS)
        self.notifier = WebhookDispatcher(
            session_factory,
            producer=producer,
            timeout=self.settings.WEBHOOK_TIMEOUT_SECONDS,
            max_failures=self.settings.WEBHOOK_MAX_FAILURES,
            transport=webhook_transport,
        )
        self.lifecycle = ConnectionManager(
            client,
            self.registry,
            self.notifier,
            session_factory,
            reconnect_delay=self.settings.RECONNECT_DELAY_SECONDS,
        )
        self.sender = OutboundSender(
            client,
            self.registry,
            self.origin,
            self.notifier,
            session_factory,
            match_window_seconds=self.settings.LID_MATCH_WINDOW_SECONDS,
        )
        self.queue = OutboundQueue(
            sender=self._deliver_queued,
            origin=self.origin,
            default_delay_ms=self.settings.QUEUE_DEFAULT_DELAY_MS,
            max_attempts=self.settings.QUEUE_MAX_ATTEMPTS,
            on_failed=self._on_queued_failed,
        )
        self.crm_sync = CRMSync(session_factory, crm_client_factory)
        self.inbound = InboundHandler(
            session_factory,
            self.origin,
            self.crm_sync,
            self.notifier,
            match_window_seconds=self.settings.LID_MATCH_WINDOW_SECONDS,
        )

        self._loaded_rate_limits: set[UUID] = set()
        self._sweeper: asyncio.Task | None = None
        client.set_event_handler(self.handle_session_event)

    # =========================================================================
    # Startup / shutdown
    # =========================================================================

    async def start(self) -> int:
        """Start background sweeps and restore sessions persisted as connected."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(
                self.origin.run_sweeper(self.settings.ORIGIN_SWEEP_INTERVAL_SECONDS), name="origin-sweeper"
            )
        return await self.lifecycle.restore_sessions()

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.queue.shutdown()
        for tenant_id in self.registry.tenants():
            self.registry.remove(tenant_id)
        await self.client.aclose()

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self, tenant_id: UUID) -> dict[str, Any]:
        return await self.lifecycle.connect(tenant_id)

    async def disconnect(self, tenant_id: UUID) -> dict[str, Any]:
        return await self.lifecycle.disconnect(tenant_id)

    async def get_status(self, tenant_id: UUID) -> dict[str, Any]:
        return await self.lifecycle.get_status(tenant_id)

    async def get_qr_code(self, tenant_id: UUID) -> dict[str, Any]:
        return await self.lifecycle.get_qr_code(tenant_id)

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_message(
        self,
        tenant_id: UUID,
        to: str,
        content: str | None,
        kind: ContentType = ContentType.TEXT,
        media: str | None = None,
        file_name: str | None = None,
    ) -> Message:
        """Send now; errors reach the caller."""
        return await self.sender.send_message(tenant_id, to, content, kind, media, file_name)

    def queue_message(
        self,
        tenant_id: UUID,
        to: str,
        content: str | None,
        kind: ContentType = ContentType.TEXT,
        media: str | None = None,
        file_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> QueuedMessage:
        """Accept a message for drip delivery."""
        self._load_rate_limit(tenant_id)
        return self.queue.enqueue(tenant_id, to, content, kind, media, file_name, metadata)

    async def _deliver_queued(self, message: QueuedMessage) -> None:
        await self.sender.send_message(
            message.tenant_id,
            message.to,
            message.content,
            message.kind,
            message.media,
            message.file_name,
            source=message.metadata.get("source", "queue"),
        )

    async def _on_queued_failed(self, message: QueuedMessage, error: Exception) -> None:
        await self.notifier.trigger(
            message.tenant_id,
            ConnectorEventType.MESSAGE_FAILED,
            {**message.summary(), "error": str(error)},
        )

    # =========================================================================
    # Queue control
    # =========================================================================

    def _load_rate_limit(self, tenant_id: UUID) -> None:
        """Apply the persisted override once per process."""
        if tenant_id in self._loaded_rate_limits:
            return
        self._loaded_rate_limits.add(tenant_id)
        with session_scope(self.session_factory) as db:
            subaccount = ConnectorRepository(db).get_subaccount(tenant_id)
            stored = dict(subaccount.rate_limit) if subaccount and subaccount.rate_limit else None
        if stored and not self.queue.has_custom_rate_limit(tenant_id):
            self.queue.set_rate_limit(tenant_id, stored)

    def set_rate_limit(self, tenant_id: UUID, config: RateLimitConfig | dict[str, Any]) -> RateLimitConfig:
        """Change a tenant's rate limit now and persist it."""
        rate_limit = self.queue.set_rate_limit(tenant_id, config)
        self._loaded_rate_limits.add(tenant_id)
        with session_scope(self.session_factory) as db:
            subaccount = ConnectorRepository(db).get_subaccount(tenant_id)
            if subaccount is None:
                raise SubAccountNotFoundError(tenant_id)
            subaccount.rate_limit = rate_limit.model_dump()
        return rate_limit

    def apply_drip_default(self, tenant_id: UUID, delay_ms: int) -> None:
        """Use delay_ms for a tenant that has no rate limit of its own."""
        self._load_rate_limit(tenant_id)
        if not self.queue.has_custom_rate_limit(tenant_id):
            self.queue.set_rate_limit(tenant_id, {"delay_between_messages": delay_ms}, custom=False)

    def get_queue_status(self, tenant_id: UUID) -> dict[str, Any]:
        return self.queue.status(tenant_id)

    def pause_queue(self, tenant_id: UUID) -> None:
        self.queue.pause(tenant_id)

    def resume_queue(self, tenant_id: UUID) -> None:
        self.queue.resume(tenant_id)

    def clear_queue(self, tenant_id: UUID) -> int:
        return self.queue.clear(tenant_id)

    # =========================================================================
    # Tenants
    # =========================================================================

    async def remove_tenant(self, tenant_id: UUID) -> None:
        """Tear down everything held for a tenant that is being deleted."""
        if self.registry.get(tenant_id) is not None:
            await self.lifecycle.disconnect(tenant_id)
        await self.queue.remove_tenant(tenant_id)
        self.origin.forget_tenant(tenant_id)
        self.registry.remove(tenant_id)
        self._loaded_rate_limits.discard(tenant_id)
        logger.info("Tenant removed", extra={"tenant_id": str(tenant_id)})

    # =========================================================================
    # Session events
    # =========================================================================

    async def handle_session_event(self, event: SessionEvent) -> dict[str, Any] | None:
        """
        Dispatch one session event.

        Errors are logged per event so one bad event does not stop the stream.
        """
        try:
            if isinstance(event, MessageEvent):
                return await self.inbound.handle(event)
            if isinstance(event, QrEvent):
                await self.lifecycle.handle_qr(event)
            elif isinstance(event, ConnectionUpdate):
                await self.lifecycle.handle_connection_update(event)
            elif isinstance(event, IdentityHint):
                self._learn_hint(event)
        except Exception as e:
            logger.error(
                f"Failed to handle session event: {e}",
                extra={"tenant_id": str(event.tenant_id), "event_type": type(event).__name__},
                exc_info=True,
            )
            return {"status": "error", "error": str(e)}
        return None

    def _learn_hint(self, hint: IdentityHint) -> None:
        with session_scope(self.session_factory) as db:
            IdentityResolver(db, self.settings.LID_MATCH_WINDOW_SECONDS).learn(
                hint.tenant_id, hint.whatsapp_id, hint.phone_number, hint.name
            )
        logger.debug(
            "Stored identity hint",
            extra={"tenant_id": str(hint.tenant_id), "whatsapp_id": hint.whatsapp_id},
        )
