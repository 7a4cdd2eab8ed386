"""
Tests for direct sends and the connector's queue operations.
"""

import asyncio

import pytest
import pytest_asyncio

from ghl_whatsapp.errors import InvalidMessageError, NotConnectedError, SessionError
from ghl_whatsapp.persistence.models import ContentType, Message, MessageStatus, SubAccount
from ghl_whatsapp.persistence.repo import ConnectorRepository
from ghl_whatsapp.service.connector import WhatsAppConnector
from ghl_whatsapp.service.outbound_handler import build_payload, get_mime_type

OWN_PHONE = "5511900000000"
CONTACT = "393806510543"
LID = "250830569660605"


@pytest_asyncio.fixture
async def connected(connect_tenant, tenant):
    await connect_tenant(tenant.id, OWN_PHONE)
    return tenant


async def drain(connector: WhatsAppConnector, tenant_id, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while connector.get_queue_status(tenant_id)["processing"]:
        if loop.time() > deadline:
            raise AssertionError("queue did not drain")
        await asyncio.sleep(0.01)


class TestBuildPayload:
    def test_text_requires_content(self):
        with pytest.raises(InvalidMessageError):
            build_payload(CONTACT, ContentType.TEXT, "")

    def test_recipient_required(self):
        with pytest.raises(InvalidMessageError):
            build_payload("+", ContentType.TEXT, "hi")

    def test_media_requires_url(self):
        with pytest.raises(InvalidMessageError):
            build_payload(CONTACT, ContentType.IMAGE, "caption")

    def test_unsupported_kind(self):
        with pytest.raises(InvalidMessageError):
            build_payload(CONTACT, ContentType.LOCATION, "here")

    def test_document_gets_file_name_and_mime_type(self):
        payload = build_payload(CONTACT, ContentType.DOCUMENT, None, media="https://cdn.example.com/files/quote.pdf")
        assert payload.file_name == "quote.pdf"
        assert payload.mime_type == "application/pdf"
        assert payload.describe() == "[Document]"

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("report.XLSX", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
            ("https://cdn.example.com/a/photo.jpg?sig=1", "image/jpeg"),
            ("no_extension", "application/octet-stream"),
            (None, "application/octet-stream"),
        ],
    )
    def test_mime_types(self, name, expected):
        assert get_mime_type(name) == expected


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_requires_connected_session(self, connector, tenant):
        with pytest.raises(NotConnectedError):
            await connector.send_message(tenant.id, CONTACT, "hi")

    @pytest.mark.asyncio
    async def test_sends_and_records(self, connector, stub_client, connected, db, subscribe, webhook_recorder):
        subscribe(connected.id, events=["message.sent"])

        message = await connector.send_message(connected.id, "+39 380 651 0543", "Your appointment is tomorrow")

        assert stub_client.sent_messages[0]["to"] == f"{CONTACT}@s.whatsapp.net"
        assert message.status == MessageStatus.SENT.value
        assert message.from_number == OWN_PHONE
        assert message.to_number == CONTACT
        assert message.extra["source"] == "api"

        mapping = ConnectorRepository(db).get_mapping(connected.id, CONTACT)
        assert mapping is not None
        assert mapping.whatsapp_id is None

        [event] = webhook_recorder.events("message.sent")
        assert event["message_id"] == message.provider_message_id

    @pytest.mark.asyncio
    async def test_directory_lid_is_used_and_learned(self, connector, stub_client, connected, db):
        stub_client.directory[CONTACT] = f"{LID}@lid"

        await connector.send_message(connected.id, CONTACT, "hi")

        assert stub_client.sent_messages[0]["to"] == f"{LID}@lid"
        assert ConnectorRepository(db).get_mapping(connected.id, CONTACT).whatsapp_id == LID

    @pytest.mark.asyncio
    async def test_gateway_error_reaches_caller(self, connector, stub_client, connected, db):
        stub_client.fail_next(1)

        with pytest.raises(SessionError):
            await connector.send_message(connected.id, CONTACT, "hi")

        assert db.query(Message).filter(Message.tenant_id == connected.id).count() == 0

    @pytest.mark.asyncio
    async def test_media_send(self, connector, stub_client, connected):
        message = await connector.send_message(
            connected.id, CONTACT, "Look", ContentType.IMAGE, media="https://cdn.example.com/x.png"
        )

        sent = stub_client.sent_messages[0]
        assert sent["kind"] == "image"
        assert sent["mime_type"] == "image/png"
        assert message.media_url == "https://cdn.example.com/x.png"
        assert message.content == "Look"


class TestQueueOperations:
    @pytest.mark.asyncio
    async def test_queued_messages_are_delivered_in_order(self, connector, stub_client, connected):
        for text in ("one", "two", "three"):
            connector.queue_message(connected.id, CONTACT, text, metadata={"source": "crm_webhook"})

        await drain(connector, connected.id)

        assert [m["text"] for m in stub_client.sent_messages] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_failed_queued_message_emits_failure(self, connector, tenant, subscribe, webhook_recorder):
        """A tenant that is not connected: every attempt fails and the message is dropped."""
        subscribe(tenant.id)

        queued = connector.queue_message(tenant.id, CONTACT, "lost")
        await drain(connector, tenant.id)
        for _ in range(50):
            if webhook_recorder.events("message.failed"):
                break
            await asyncio.sleep(0.01)

        [failure] = webhook_recorder.events("message.failed")
        assert failure["id"] == queued.id
        assert failure["attempts"] == 3
        assert "not connected" in failure["error"]
        assert connector.get_queue_status(tenant.id)["queue_length"] == 0

    @pytest.mark.asyncio
    async def test_pause_resume_clear(self, connector, stub_client, connected):
        connector.pause_queue(connected.id)
        connector.queue_message(connected.id, CONTACT, "one")
        connector.queue_message(connected.id, CONTACT, "two")

        status = connector.get_queue_status(connected.id)
        assert status["paused"] is True
        assert status["queue_length"] == 2

        assert connector.clear_queue(connected.id) == 2
        connector.queue_message(connected.id, CONTACT, "three")
        connector.resume_queue(connected.id)
        await drain(connector, connected.id)

        assert [m["text"] for m in stub_client.sent_messages] == ["three"]

    @pytest.mark.asyncio
    async def test_invalid_message_rejected(self, connector, tenant):
        with pytest.raises(InvalidMessageError):
            connector.queue_message(tenant.id, CONTACT, None, ContentType.DOCUMENT)


class TestRateLimits:
    def test_set_rate_limit_persists(self, connector, tenant, db):
        rate_limit = connector.set_rate_limit(tenant.id, {"delay_between_messages": 2000})

        assert rate_limit.delay_between_messages == 2000
        assert connector.get_queue_status(tenant.id)["rate_limit"]["delay_between_messages"] == 2000
        stored = db.query(SubAccount).filter(SubAccount.id == tenant.id).first()
        assert stored.rate_limit["delay_between_messages"] == 2000

    @pytest.mark.asyncio
    async def test_persisted_rate_limit_survives_restart(
        self, connector, stub_client, session_factory, fake_crm, settings, tenant
    ):
        connector.set_rate_limit(tenant.id, {"delay_between_messages": 7000})

        restarted = WhatsAppConnector(stub_client, session_factory, lambda token: fake_crm, settings=settings)
        restarted.pause_queue(tenant.id)
        restarted.queue_message(tenant.id, CONTACT, "hi")

        assert restarted.get_queue_status(tenant.id)["rate_limit"]["delay_between_messages"] == 7000
        restarted.clear_queue(tenant.id)

    def test_drip_default_does_not_override_custom_limit(self, connector, tenant):
        connector.set_rate_limit(tenant.id, {"delay_between_messages": 3000})

        connector.apply_drip_default(tenant.id, 1000)

        assert connector.get_queue_status(tenant.id)["rate_limit"]["delay_between_messages"] == 3000

    def test_drip_default_applies_without_custom_limit(self, connector, tenant):
        connector.apply_drip_default(tenant.id, 1000)

        assert connector.get_queue_status(tenant.id)["rate_limit"]["delay_between_messages"] == 1000


class TestRemoveTenant:
    @pytest.mark.asyncio
    async def test_remove_tenant_tears_everything_down(self, connector, stub_client, connected):
        connector.pause_queue(connected.id)
        connector.queue_message(connected.id, CONTACT, "hi")

        await connector.remove_tenant(connected.id)

        assert connector.registry.get(connected.id) is None
        assert connector.get_queue_status(connected.id)["queue_length"] == 0
        assert not connector.origin.is_origin(connected.id, CONTACT)
        assert connected.id in stub_client.logged_out
