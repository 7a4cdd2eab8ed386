"""
Pytest fixtures for connector tests.
"""

import json
from typing import Any
from uuid import UUID

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from basecore.db import enable_sqlite_savepoints, session_scope
from basecore.settings import Settings
from ghl_whatsapp.crm.base import CRMClient
from ghl_whatsapp.persistence.models import Base
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.service.connector import WhatsAppConnector
from ghl_whatsapp.session.stub import StubSessionClient


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    """Session for test setup and assertions."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    """Settings with no delays so tests run instantly."""
    return Settings(
        DATABASE_URL="sqlite://",
        REDIS_URL="",
        QUEUE_DEFAULT_DELAY_MS=0,
        DRIP_DELAY_MS=0,
        RECONNECT_DELAY_SECONDS=0.0,
        ENCRYPTION_KEY="",
    )


def _create_tenant(session_factory, name: str, **fields: Any):
    with session_scope(session_factory) as db:
        return ConnectorRepository(db).create_subaccount(name=name, **fields)


@pytest.fixture
def tenant(session_factory):
    """A paid tenant bound to a CRM location."""
    return _create_tenant(
        session_factory,
        "Acme Dental",
        is_paid=True,
        crm_location_id="loc_acme",
        crm_access_token="crm-token-acme",
    )


@pytest.fixture
def other_tenant(session_factory):
    return _create_tenant(session_factory, "Beta Clinic", is_paid=True)


@pytest.fixture
def make_tenant(session_factory):
    def _make(name: str, **fields: Any):
        return _create_tenant(session_factory, name, **fields)

    return _make


@pytest.fixture
def stub_client():
    return StubSessionClient()


class WebhookRecorder:
    """Records tenant webhook deliveries made through httpx.MockTransport."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def events(self, event: str) -> list[dict[str, Any]]:
        return [body["data"] for body in self.bodies if body["event"] == event]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def webhook_recorder():
    return WebhookRecorder()


@pytest.fixture
def subscribe(session_factory):
    """Register a webhook subscription for a tenant."""

    def _subscribe(tenant_id: UUID, events: list[str] | None = None, secret: str | None = "s3cret"):
        with session_scope(session_factory) as db:
            webhook = ConnectorRepository(db).create_webhook(
                tenant_id, "https://hooks.example.com/whatsapp", secret=secret, events=events
            )
            db.flush()
            return webhook.id

    return _subscribe


class FakeCRMClient(CRMClient):
    """In-memory CRM that records every call."""

    def __init__(self):
        self.contacts: dict[str, dict[str, Any]] = {}
        self.posted: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    async def find_or_create_contact(self, location_id: str, phone: str, name: str | None = None) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        for contact_id, contact in self.contacts.items():
            if contact["phone"] == phone:
                return contact_id
        contact_id = f"contact_{len(self.contacts) + 1}"
        self.contacts[contact_id] = {"id": contact_id, "phone": phone, "name": name}
        return contact_id

    async def find_contacts_by_name(self, location_id: str, name: str) -> list[dict[str, Any]]:
        return [c for c in self.contacts.values() if (c["name"] or "").lower() == name.lower()]

    async def find_or_create_conversation(self, location_id: str, contact_id: str) -> str:
        return f"conv_{contact_id}"

    async def post_message(self, location_id: str, conversation_id: str, content: str, direction: str) -> str:
        self.posted.append({
            "location_id": location_id,
            "conversation_id": conversation_id,
            "content": content,
            "direction": direction,
        })
        return f"crm_msg_{len(self.posted)}"


@pytest.fixture
def fake_crm():
    return FakeCRMClient()


@pytest.fixture
def connector(stub_client, session_factory, fake_crm, settings, webhook_recorder):
    """Connector wired to the stub session, fake CRM and recorded webhooks."""
    return WhatsAppConnector(
        stub_client,
        session_factory,
        lambda token: fake_crm,
        settings=settings,
        webhook_transport=webhook_recorder.transport,
    )


@pytest.fixture
def connect_tenant(connector, stub_client):
    """Run connect and pair the session with a phone number."""

    async def _connect(tenant_id: UUID, phone: str):
        await connector.connect(tenant_id)
        await stub_client.pair(tenant_id, phone)
        return await connector.get_status(tenant_id)

    return _connect


class RecordingNotifier:
    """Stands in for the webhook dispatcher in component tests."""

    def __init__(self):
        self.calls: list[tuple[UUID, str, dict[str, Any]]] = []

    async def trigger(self, tenant_id: UUID, event: str, data: dict[str, Any]) -> bool:
        self.calls.append((tenant_id, str(event), data))
        return True

    def events(self, event: str) -> list[dict[str, Any]]:
        return [data for _, name, data in self.calls if name == event]


@pytest.fixture
def notifier():
    return RecordingNotifier()
