"""
Pytest configuration for API integration tests.

Runs the connector API in-process against in-memory SQLite and the stub session.
"""

import os

# Set environment variables before the app module builds its defaults
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("WHATSAPP_PROVIDER", "stub")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from basecore.db import enable_sqlite_savepoints, session_scope
from basecore.settings import Settings
from connector_api.main import create_app
from ghl_whatsapp.persistence.models import Base
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.service.connector import WhatsAppConnector
from ghl_whatsapp.session.stub import StubSessionClient

INGRESS_KEY = "ingress-key"


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        REDIS_URL="",
        WEBHOOK_INGRESS_KEY=INGRESS_KEY,
        DRIP_MODE_ENABLED=True,
        DRIP_DELAY_MS=0,
        QUEUE_DEFAULT_DELAY_MS=0,
        RECONNECT_DELAY_SECONDS=0.0,
    )


@pytest.fixture
def stub_client():
    return StubSessionClient()


@pytest.fixture
def connector(stub_client, session_factory, settings):
    return WhatsAppConnector(stub_client, session_factory, lambda token: None, settings=settings)


@pytest.fixture
def subaccount(session_factory):
    """Paid sub-account without a CRM token (CRM sync is skipped)."""
    with session_scope(session_factory) as db:
        return ConnectorRepository(db).create_subaccount(
            name="Acme Dental", is_paid=True, crm_location_id="loc_acme"
        )


@pytest.fixture
def client(connector, session_factory, settings):
    app = create_app(connector=connector, session_factory=session_factory, settings=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth(subaccount):
    return {"X-API-Key": subaccount.api_key}
