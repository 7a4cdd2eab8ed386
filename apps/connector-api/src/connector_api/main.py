"""
Connector API

FastAPI app exposing the connector to the outside world.

Responsibilities:
- Receive session events from the Evolution API gateway
- Receive outbound-message webhooks from the CRM and deliver them over WhatsApp
- Per-sub-account API (X-API-Key) for connection, sending and queue control
"""

import json
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from basecore.db import get_engine, get_sessionmaker
from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import Settings, get_settings
from connector_api.schemas import (
    CRMOutboundWebhook,
    QueuedResponse,
    RateLimitRequest,
    SendMessageRequest,
)
from ghl_whatsapp.crm.ghl import GoHighLevelClient
from ghl_whatsapp.errors import (
    ConnectorError,
    InvalidMessageError,
    NotConnectedError,
    SessionError,
    SubAccountInactiveError,
    SubAccountNotFoundError,
)
from ghl_whatsapp.notifications.producer import EventStreamProducer
from ghl_whatsapp.persistence.models import Base, ConnectionStatus, ContentType, SubAccount
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.routing.tenant_resolver import TenantResolver
from ghl_whatsapp.service.connector import WhatsAppConnector
from ghl_whatsapp.service.outbound_handler import message_to_dict
from ghl_whatsapp.session.base import SessionClient
from ghl_whatsapp.session.evolution import EvolutionSessionClient
from ghl_whatsapp.session.evolution.webhook import (
    extract_instance_name,
    parse_evolution_event,
    validate_api_key,
)
from ghl_whatsapp.session.stub import StubSessionClient

setup_logging()
logger = logging.getLogger(__name__)

CRM_OUTBOUND_TYPES = {"OutboundMessage", "SMS"}

ERROR_STATUS = {
    SubAccountNotFoundError: 404,
    SubAccountInactiveError: 403,
    NotConnectedError: 409,
    InvalidMessageError: 422,
    SessionError: 502,
}


def build_session_client(settings: Settings) -> SessionClient:
    """Get the configured session gateway."""
    if settings.WHATSAPP_PROVIDER == "evolution":
        return EvolutionSessionClient(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            webhook_url=settings.EVOLUTION_WEBHOOK_URL or None,
        )
    return StubSessionClient()


def build_connector(settings: Settings, session_factory: sessionmaker) -> WhatsAppConnector:
    redis_client = get_redis_client()
    producer = EventStreamProducer(redis_client) if redis_client is not None else None

    def crm_client_factory(token: str) -> GoHighLevelClient:
        return GoHighLevelClient(
            token,
            api_url=settings.CRM_API_URL,
            api_version=settings.CRM_API_VERSION,
            timeout=settings.CRM_TIMEOUT_SECONDS,
        )

    return WhatsAppConnector(
        build_session_client(settings),
        session_factory,
        crm_client_factory,
        settings=settings,
        producer=producer,
    )


def attachment_kind(attachment_type: str | None) -> ContentType:
    """Map a CRM attachment type (kind or MIME type) to a content type."""
    value = (attachment_type or "").lower()
    for kind in (ContentType.IMAGE, ContentType.AUDIO, ContentType.VIDEO, ContentType.DOCUMENT):
        if value == kind.value or value.startswith(f"{kind.value}/"):
            return kind
    return ContentType.DOCUMENT


def create_app(
    connector: WhatsAppConnector | None = None,
    session_factory: sessionmaker | None = None,
    settings: Settings | None = None,
    create_tables: bool = False,
) -> FastAPI:
    """
    Build the API app.

    Args:
        connector: Prebuilt connector (defaults to one built from settings)
        session_factory: Sessionmaker for request handlers (defaults to basecore's)
        settings: Defaults to basecore settings
        create_tables: Create connector tables on startup
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_sessionmaker()
    connector = connector or build_connector(settings, session_factory)

    app = FastAPI(
        title="GHL WhatsApp Connector",
        description="Bridges CRM conversations to WhatsApp sessions",
        version="1.0.0",
    )
    app.state.connector = connector

    def get_session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def get_subaccount(
        x_api_key: str = Header(..., alias="X-API-Key"),
        db: Session = Depends(get_session),
    ) -> SubAccount:
        subaccount = ConnectorRepository(db).get_subaccount_by_api_key(x_api_key)
        if not subaccount:
            raise HTTPException(status_code=401, detail="Invalid API key")
        return subaccount

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError):
        status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
        return JSONResponse(status_code=status_code, content={"error": str(exc), "code": exc.code})

    @app.on_event("startup")
    async def startup():
        """Create tables when asked, restore connected sessions."""
        if create_tables:
            Base.metadata.create_all(bind=session_factory.kw.get("bind") or get_engine())
        restored = await connector.start()
        logger.info("Connector API started", extra={"restored_sessions": restored})

    @app.on_event("shutdown")
    async def shutdown():
        await connector.stop()

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "service": "connector-api"}

    # =========================================================================
    # Session gateway webhook
    # =========================================================================

    @app.post("/webhook/evolution")
    async def receive_evolution_webhook(request: Request, db: Session = Depends(get_session)):
        """
        Receive session events from Evolution API.

        Flow:
        1. Validate api key
        2. Resolve sub-account from instance name
        3. Normalize into session events
        4. Hand each event to the connector
        """
        body = await request.body()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON payload")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        expected_key = settings.WEBHOOK_INGRESS_KEY or settings.EVOLUTION_API_KEY
        if expected_key:
            if not (validate_api_key(dict(request.headers), expected_key) or payload.get("apikey") == expected_key):
                logger.warning("Invalid Evolution API key")
                raise HTTPException(status_code=403, detail="Invalid API key")

        instance_name = extract_instance_name(payload)
        subaccount = TenantResolver(db).resolve_from_instance_name(instance_name or "")
        if not subaccount:
            return {"status": "ignored", "reason": "unknown_instance"}
        tenant_id = subaccount.id
        db.close()

        events = parse_evolution_event(payload, tenant_id)
        results = []
        for event in events:
            result = await connector.handle_session_event(event)
            if result:
                results.append(result)

        return {"status": "ok", "events": len(events), "results": results}

    # =========================================================================
    # CRM webhook
    # =========================================================================

    @app.post("/webhook/ghl")
    async def receive_crm_webhook(webhook: CRMOutboundWebhook, db: Session = Depends(get_session)):
        """
        Outbound message from the CRM. Always answers 200 so the CRM does not retry.
        """
        if webhook.kind not in CRM_OUTBOUND_TYPES:
            return {"success": True, "ignored": webhook.kind}

        if not webhook.location_id or not webhook.phone_number:
            logger.warning("CRM webhook missing location or phone")
            return {"success": True, "ignored": "missing_fields"}

        subaccount = TenantResolver(db).resolve_from_location(webhook.location_id)
        if not subaccount:
            return {"success": True}
        if not subaccount.is_paid:
            logger.warning(f"Sub-account {subaccount.id} is not paid, ignoring CRM webhook")
            return {"success": True, "message": "Payment required"}
        tenant_id = subaccount.id
        db.close()

        status = await connector.get_status(tenant_id)
        if status["status"] != ConnectionStatus.CONNECTED.value:
            logger.warning(f"WhatsApp not connected for sub-account {tenant_id}")
            return {"success": True}

        metadata = {"source": "crm_webhook", "contact_id": webhook.contact_id}
        items: list[tuple[ContentType, str | None, str | None]] = [
            (attachment_kind(a.type), webhook.text, a.url) for a in webhook.attachments
        ]
        if not items and webhook.text:
            items.append((ContentType.TEXT, webhook.text, None))

        try:
            if settings.DRIP_MODE_ENABLED:
                connector.apply_drip_default(tenant_id, settings.DRIP_DELAY_MS)
                for kind, content, media in items:
                    connector.queue_message(
                        tenant_id, webhook.phone_number, content, kind, media=media, metadata=metadata
                    )
            else:
                for kind, content, media in items:
                    await connector.send_message(tenant_id, webhook.phone_number, content, kind, media=media)
        except ConnectorError as e:
            logger.error(f"Failed to deliver CRM message: {e}", extra={"tenant_id": str(tenant_id)})

        return {"success": True, "messages": len(items)}

    # =========================================================================
    # Sub-account API
    # =========================================================================

    @app.post("/api/whatsapp/connect")
    async def connect(subaccount: SubAccount = Depends(get_subaccount)):
        return await connector.connect(subaccount.id)

    @app.post("/api/whatsapp/disconnect")
    async def disconnect(subaccount: SubAccount = Depends(get_subaccount)):
        return await connector.disconnect(subaccount.id)

    @app.get("/api/whatsapp/status")
    async def status(subaccount: SubAccount = Depends(get_subaccount)):
        return await connector.get_status(subaccount.id)

    @app.get("/api/whatsapp/qr")
    async def qr_code(subaccount: SubAccount = Depends(get_subaccount)):
        return await connector.get_qr_code(subaccount.id)

    @app.post("/api/whatsapp/messages")
    async def send_message(request: SendMessageRequest, subaccount: SubAccount = Depends(get_subaccount)):
        if request.queue:
            queued = connector.queue_message(
                subaccount.id,
                request.to,
                request.content,
                request.type,
                media=request.media_url,
                file_name=request.file_name,
                metadata={"source": "api"},
            )
            return QueuedResponse(
                id=queued.id, queue_length=connector.get_queue_status(subaccount.id)["queue_length"]
            )

        message = await connector.send_message(
            subaccount.id,
            request.to,
            request.content,
            request.type,
            media=request.media_url,
            file_name=request.file_name,
        )
        return message_to_dict(message)

    @app.get("/api/queue/status")
    async def queue_status(subaccount: SubAccount = Depends(get_subaccount)):
        return connector.get_queue_status(subaccount.id)

    @app.post("/api/queue/rate-limit")
    async def set_rate_limit(request: RateLimitRequest, subaccount: SubAccount = Depends(get_subaccount)):
        rate_limit = connector.set_rate_limit(subaccount.id, request.updates())
        return {"success": True, "rate_limit": rate_limit.model_dump()}

    @app.post("/api/queue/pause")
    async def pause_queue(subaccount: SubAccount = Depends(get_subaccount)):
        connector.pause_queue(subaccount.id)
        return {"success": True, "paused": True}

    @app.post("/api/queue/resume")
    async def resume_queue(subaccount: SubAccount = Depends(get_subaccount)):
        connector.resume_queue(subaccount.id)
        return {"success": True, "paused": False}

    @app.post("/api/queue/clear")
    async def clear_queue(subaccount: SubAccount = Depends(get_subaccount)):
        cleared = connector.clear_queue(subaccount.id)
        return {"success": True, "cleared": cleared}

    return app


app = create_app()
