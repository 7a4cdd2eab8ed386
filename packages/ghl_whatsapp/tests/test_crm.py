"""
Tests for the GoHighLevel client and CRM mirroring.
"""

import json

import httpx
import pytest
from cryptography.fernet import Fernet

from basecore.db import session_scope
from ghl_whatsapp.crm.ghl.client import GoHighLevelClient, phones_match
from ghl_whatsapp.crm.sync import CRMSync
from ghl_whatsapp.errors import CRMError
from ghl_whatsapp.routing.identity_resolver import ResolutionMethod, ResolvedIdentity
from ghl_whatsapp.routing.tenant_resolver import (
    TenantResolver,
    decrypt_secret,
    encrypt_secret,
    tenant_id_from_instance,
)


class GHLStub:
    """Scripted GoHighLevel API."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.contacts: list[dict] = []
        self.conversations: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "GET" and path == "/contacts/":
            return httpx.Response(200, json={"contacts": self.contacts})
        if request.method == "POST" and path == "/contacts/":
            body = json.loads(request.content)
            contact = {"id": f"c{len(self.contacts) + 1}", "phone": body["phone"], "contactName": body["name"]}
            self.contacts.append(contact)
            return httpx.Response(201, json={"contact": contact})
        if request.method == "GET" and path == "/conversations/search":
            return httpx.Response(200, json={"conversations": self.conversations})
        if request.method == "POST" and path == "/conversations/":
            return httpx.Response(201, json={"conversation": {"id": "conv_new"}})
        if request.method == "POST" and path == "/conversations/messages/inbound":
            return httpx.Response(200, json={"messageId": "ghl_msg_1", "conversationId": "conv_new"})
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def ghl():
    return GHLStub()


@pytest.fixture
def ghl_client(ghl):
    return GoHighLevelClient("token-123", transport=httpx.MockTransport(ghl.handler))


class TestPhonesMatch:
    def test_country_code_prefix(self):
        assert phones_match("+39 380 651 0543", "3806510543")
        assert phones_match("393806510543", "393806510543")
        assert not phones_match("393806510543", "5511999999999")
        assert not phones_match("", "393806510543")


class TestGoHighLevelClient:
    @pytest.mark.asyncio
    async def test_creates_missing_contact(self, ghl_client, ghl):
        contact_id = await ghl_client.find_or_create_contact("loc_1", "393806510543", "Maria")

        assert contact_id == "c1"
        create = ghl.requests[-1]
        assert create.headers["Authorization"] == "Bearer token-123"
        assert create.headers["Version"] == "2021-07-28"
        assert json.loads(create.content) == {
            "locationId": "loc_1",
            "phone": "+393806510543",
            "name": "Maria",
            "source": "WhatsApp",
        }

    @pytest.mark.asyncio
    async def test_finds_existing_contact_by_phone(self, ghl_client, ghl):
        ghl.contacts.append({"id": "existing", "phone": "+393806510543"})

        assert await ghl_client.find_or_create_contact("loc_1", "393806510543") == "existing"
        assert [r.method for r in ghl.requests] == ["GET"]

    @pytest.mark.asyncio
    async def test_name_search_is_exact(self, ghl_client, ghl):
        ghl.contacts.extend([
            {"id": "a", "firstName": "Maria", "lastName": "Rossi"},
            {"id": "b", "contactName": "Maria"},
        ])

        matches = await ghl_client.find_contacts_by_name("loc_1", "maria")

        assert [c["id"] for c in matches] == ["b"]

    @pytest.mark.asyncio
    async def test_conversation_reused_or_created(self, ghl_client, ghl):
        assert await ghl_client.find_or_create_conversation("loc_1", "c1") == "conv_new"

        ghl.conversations.append({"id": "conv_old"})
        assert await ghl_client.find_or_create_conversation("loc_1", "c1") == "conv_old"

    @pytest.mark.asyncio
    async def test_post_message(self, ghl_client, ghl):
        message_id = await ghl_client.post_message("loc_1", "conv_1", "Ciao", "inbound")

        assert message_id == "ghl_msg_1"
        body = json.loads(ghl.requests[-1].content)
        assert body["conversationId"] == "conv_1"
        assert body["body"] == "Ciao"
        assert body["direction"] == "inbound"

    @pytest.mark.asyncio
    async def test_errors_raise_crm_error(self):
        client = GoHighLevelClient(
            "token", transport=httpx.MockTransport(lambda request: httpx.Response(429, json={"message": "Too many"}))
        )

        with pytest.raises(CRMError) as exc_info:
            await client.post_message("loc_1", "conv_1", "x", "inbound")

        assert exc_info.value.retryable
        assert str(exc_info.value) == "Too many"


class TestCRMSync:
    @pytest.mark.asyncio
    async def test_sync_through_ghl(self, session_factory, tenant, ghl):
        tokens = []

        def factory(token):
            tokens.append(token)
            return GoHighLevelClient(token, transport=httpx.MockTransport(ghl.handler))

        sync = CRMSync(session_factory, factory)
        identity = ResolvedIdentity("393806510543", "393806510543", "Maria", False, ResolutionMethod.DIRECT)

        assert await sync.sync_message(tenant.id, identity, "Ciao", "inbound")
        assert tokens == ["crm-token-acme"]
        assert ghl.requests[-1].url.path == "/conversations/messages/inbound"

    @pytest.mark.asyncio
    async def test_unresolved_without_name_is_skipped(self, session_factory, tenant, fake_crm):
        sync = CRMSync(session_factory, lambda token: fake_crm)
        identity = ResolvedIdentity("250830569660605", None, None, True, ResolutionMethod.UNRESOLVED)

        assert not await sync.sync_message(tenant.id, identity, "hi", "inbound")
        assert fake_crm.posted == []

    @pytest.mark.asyncio
    async def test_ambiguous_name_is_skipped(self, session_factory, tenant, fake_crm):
        fake_crm.contacts["c1"] = {"id": "c1", "phone": "1", "name": "Maria"}
        fake_crm.contacts["c2"] = {"id": "c2", "phone": "2", "name": "maria"}
        sync = CRMSync(session_factory, lambda token: fake_crm)
        identity = ResolvedIdentity("250830569660605", None, "Maria", True, ResolutionMethod.UNRESOLVED)

        assert not await sync.sync_message(tenant.id, identity, "hi", "inbound")
        assert fake_crm.posted == []


class TestTenantResolver:
    def test_tenant_id_from_instance(self, tenant):
        assert tenant_id_from_instance(f"subaccount_{tenant.id}") == tenant.id
        assert tenant_id_from_instance("subaccount_not-a-uuid") is None
        assert tenant_id_from_instance("other_instance") is None

    def test_resolve_from_instance_and_location(self, session_factory, tenant):
        with session_scope(session_factory) as db:
            resolver = TenantResolver(db)
            assert resolver.resolve_from_instance_name(tenant.instance_name).id == tenant.id
            assert resolver.resolve_from_location("loc_acme").id == tenant.id
            assert resolver.resolve_from_location("loc_unknown") is None

    def test_secret_encryption(self):
        key = Fernet.generate_key().decode()

        encrypted = encrypt_secret("crm-token", key)

        assert encrypted != "crm-token"
        assert decrypt_secret(encrypted, key) == "crm-token"
        assert decrypt_secret("legacy-plaintext", key) == "legacy-plaintext"
        assert encrypt_secret("crm-token", "") == "crm-token"
