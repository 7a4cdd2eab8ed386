"""
Tests for processing session message events end to end.
"""

import pytest
import pytest_asyncio

from ghl_whatsapp.errors import CRMError
from ghl_whatsapp.persistence.models import Message, MessageDirection
from ghl_whatsapp.session.base import IdentityHint, MessageEvent

OWN_PHONE = "5511900000000"
CONTACT = "393806510543"
LID = "250830569660605"


def text_event(tenant_id, text, message_id, remote_jid=f"{CONTACT}@s.whatsapp.net", from_me=False, **fields):
    return MessageEvent(
        tenant_id=tenant_id,
        provider_message_id=message_id,
        remote_jid=remote_jid,
        from_me=from_me,
        message={"conversation": text} if text is not None else None,
        **fields,
    )


def messages_for(session_factory, tenant_id) -> list[Message]:
    with session_factory() as db:
        return db.query(Message).filter(Message.tenant_id == tenant_id).order_by(Message.created_at).all()


@pytest_asyncio.fixture
async def connected(connect_tenant, tenant):
    await connect_tenant(tenant.id, OWN_PHONE)
    return tenant


class TestInbound:
    @pytest.mark.asyncio
    async def test_inbound_text_is_stored_and_synced(
        self, connector, connected, session_factory, fake_crm, subscribe, webhook_recorder
    ):
        subscribe(connected.id)

        result = await connector.handle_session_event(
            text_event(connected.id, "Hello!", "wa_1", push_name="Maria")
        )

        assert result["status"] == "processed"
        assert result["direction"] == MessageDirection.INBOUND.value
        assert result["crm_sync"] == "synced"

        [message] = messages_for(session_factory, connected.id)
        assert message.from_number == CONTACT
        assert message.to_number == OWN_PHONE
        assert message.content == "Hello!"
        assert message.extra["source"] == "whatsapp"
        assert message.extra["resolution"] == "direct"

        assert fake_crm.posted == [
            {"location_id": "loc_acme", "conversation_id": "conv_contact_1", "content": "Hello!", "direction": "inbound"}
        ]
        assert fake_crm.contacts["contact_1"]["name"] == "Maria"
        assert webhook_recorder.events("message.received")[0]["contact_name"] == "Maria"

    @pytest.mark.asyncio
    async def test_replayed_event_is_processed_once(self, connector, connected, session_factory, fake_crm):
        event = text_event(connected.id, "Hello!", "wa_1")

        first = await connector.handle_session_event(event)
        second = await connector.handle_session_event(event)

        assert first["status"] == "processed"
        assert second == {"message_id": "wa_1", "status": "skipped", "reason": "duplicate"}
        assert len(messages_for(session_factory, connected.id)) == 1
        assert len(fake_crm.posted) == 1

    @pytest.mark.asyncio
    async def test_undecryptable_event_is_retried_later(self, connector, connected, session_factory):
        """Nothing is stored for a decryption failure, so the retry goes through."""
        failed = await connector.handle_session_event(text_event(connected.id, None, "wa_1"))
        assert failed["reason"] == "decryption_failed"
        assert messages_for(session_factory, connected.id) == []

        retried = await connector.handle_session_event(text_event(connected.id, "Hello!", "wa_1"))
        assert retried["status"] == "processed"

    @pytest.mark.asyncio
    async def test_group_messages_are_ignored(self, connector, connected, session_factory):
        result = await connector.handle_session_event(
            text_event(connected.id, "hi all", "wa_1", remote_jid="120363000000000000@g.us")
        )

        assert result["reason"] == "group"
        assert messages_for(session_factory, connected.id) == []

    @pytest.mark.asyncio
    async def test_crm_failure_does_not_lose_message(self, connector, connected, session_factory, fake_crm):
        fake_crm.fail_with = CRMError("CRM unavailable", retryable=True)

        result = await connector.handle_session_event(text_event(connected.id, "Hello!", "wa_1"))

        assert result["crm_sync"] == "skipped"
        assert len(messages_for(session_factory, connected.id)) == 1

    @pytest.mark.asyncio
    async def test_tenant_without_crm_is_not_synced(self, connector, other_tenant, fake_crm):
        result = await connector.handle_session_event(text_event(other_tenant.id, "Hello!", "wa_1"))

        assert result["status"] == "processed"
        assert result["crm_sync"] == "skipped"
        assert fake_crm.posted == []


class TestOpaqueSender:
    @pytest.mark.asyncio
    async def test_unresolved_sender_is_persisted_with_raw_id(self, connector, connected, session_factory, fake_crm):
        result = await connector.handle_session_event(
            text_event(connected.id, "who am I", "wa_1", remote_jid=f"{LID}@lid", push_name="Maria")
        )

        assert result["resolution"] == "unresolved"
        assert result["crm_sync"] == "skipped"
        [message] = messages_for(session_factory, connected.id)
        assert message.from_number == LID
        assert message.extra["whatsapp_id"] == LID
        assert fake_crm.posted == []

    @pytest.mark.asyncio
    async def test_unresolved_sender_matched_by_unique_crm_name(self, connector, connected, fake_crm):
        fake_crm.contacts["contact_9"] = {"id": "contact_9", "phone": CONTACT, "name": "Maria"}

        result = await connector.handle_session_event(
            text_event(connected.id, "who am I", "wa_1", remote_jid=f"{LID}@lid", push_name="Maria")
        )

        assert result["crm_sync"] == "synced"
        assert fake_crm.posted[0]["conversation_id"] == "conv_contact_9"

    @pytest.mark.asyncio
    async def test_reply_after_send_resolves_to_phone(self, connector, connected, session_factory):
        await connector.send_message(connected.id, CONTACT, "Your appointment is tomorrow")

        result = await connector.handle_session_event(
            text_event(connected.id, "Thanks", "wa_2", remote_jid=f"{LID}@lid", push_name="Maria")
        )

        assert result["resolution"] == "heuristic"
        assert result["contact"] == CONTACT

    @pytest.mark.asyncio
    async def test_identity_hint_teaches_mapping(self, connector, connected):
        await connector.handle_session_event(
            IdentityHint(tenant_id=connected.id, whatsapp_id=LID, phone_number=CONTACT, name="Maria")
        )
        result = await connector.handle_session_event(
            text_event(connected.id, "hi", "wa_1", remote_jid=f"{LID}@lid")
        )

        assert result["resolution"] == "mapping"
        assert result["contact"] == CONTACT


class TestOutboundEcho:
    @pytest.mark.asyncio
    async def test_echo_of_our_send_is_not_mirrored(self, connector, connected, session_factory, fake_crm):
        sent = await connector.send_message(connected.id, CONTACT, "Your appointment is tomorrow")

        result = await connector.handle_session_event(
            text_event(connected.id, "Your appointment is tomorrow", "wa_echo", from_me=True)
        )

        assert result["crm_sync"] == "skipped_origin"
        assert fake_crm.posted == []
        ids = {m.provider_message_id for m in messages_for(session_factory, connected.id)}
        assert ids == {sent.provider_message_id, "wa_echo"}

    @pytest.mark.asyncio
    async def test_echo_of_sent_message_id_is_a_duplicate(self, connector, connected, fake_crm):
        sent = await connector.send_message(connected.id, CONTACT, "Hi")

        result = await connector.handle_session_event(
            text_event(connected.id, "Hi", sent.provider_message_id, from_me=True)
        )

        assert result["reason"] == "duplicate"

    @pytest.mark.asyncio
    async def test_message_from_operator_phone_is_mirrored(self, connector, connected, session_factory, fake_crm):
        """Sent from the phone itself: no origin mark, so the CRM gets a copy."""
        result = await connector.handle_session_event(
            text_event(connected.id, "typed on the phone", "wa_1", from_me=True, push_name="Acme Dental")
        )

        assert result["direction"] == MessageDirection.OUTBOUND.value
        assert result["crm_sync"] == "synced"
        assert fake_crm.posted[0]["direction"] == "outbound"
        [message] = messages_for(session_factory, connected.id)
        assert message.from_number == OWN_PHONE
        assert message.to_number == CONTACT
        assert message.extra["source"] == "whatsapp_direct"

    @pytest.mark.asyncio
    async def test_operator_message_to_unresolved_contact_is_not_mirrored(self, connector, connected, fake_crm):
        result = await connector.handle_session_event(
            text_event(connected.id, "hello", "wa_1", remote_jid=f"{LID}@lid", from_me=True)
        )

        assert result["crm_sync"] == "skipped_unresolved"
        assert fake_crm.posted == []
