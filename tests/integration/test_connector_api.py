"""
Integration Test: Connector API

Drives the HTTP surface end to end:
1. Connect and pair a session through the Evolution webhook
2. Send directly and through the drip queue
3. Deliver CRM outbound webhooks to WhatsApp
4. Queue control endpoints

Run with:
    pytest tests/integration/test_connector_api.py -v
"""

import time

INGRESS_KEY = "ingress-key"
PHONE = "5511900000000"
CONTACT = "393806510543"


def evolution_event(subaccount, event: str, data: dict) -> dict:
    return {"event": event, "instance": f"subaccount_{subaccount.id}", "data": data}


def pair(client, subaccount, auth, phone: str = PHONE) -> dict:
    client.post("/api/whatsapp/connect", headers=auth)
    response = client.post(
        "/webhook/evolution",
        json=evolution_event(subaccount, "connection.update", {"state": "open", "wuid": f"{phone}@s.whatsapp.net"}),
        headers={"apikey": INGRESS_KEY},
    )
    assert response.status_code == 200
    return client.get("/api/whatsapp/status", headers=auth).json()


def wait_for_queue(client, auth, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        status = client.get("/api/queue/status", headers=auth).json()
        if not status["processing"] and status["queue_length"] == 0:
            return status
        if time.monotonic() > deadline:
            raise AssertionError(f"queue did not drain: {status}")
        time.sleep(0.02)


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "connector-api"}


class TestAuth:
    def test_missing_or_wrong_key(self, client, subaccount):
        assert client.get("/api/whatsapp/status").status_code == 422
        assert client.get("/api/whatsapp/status", headers={"X-API-Key": "nope"}).status_code == 401


class TestConnection:
    def test_connect_then_pair(self, client, subaccount, auth):
        response = client.post("/api/whatsapp/connect", headers=auth)
        assert response.status_code == 200
        assert response.json()["status"] == "qr_ready"

        qr = client.get("/api/whatsapp/qr", headers=auth).json()
        assert qr["qr_code"].startswith("data:image/png;base64,")

        status = pair(client, subaccount, auth)
        assert status["status"] == "connected"
        assert status["phone_number"] == PHONE

    def test_disconnect(self, client, subaccount, auth, stub_client):
        pair(client, subaccount, auth)

        response = client.post("/api/whatsapp/disconnect", headers=auth)

        assert response.json()["status"] == "disconnected"
        assert subaccount.id in stub_client.logged_out


class TestEvolutionWebhook:
    def test_rejects_wrong_key(self, client, subaccount):
        response = client.post(
            "/webhook/evolution",
            json=evolution_event(subaccount, "connection.update", {"state": "open"}),
            headers={"apikey": "wrong"},
        )
        assert response.status_code == 403

    def test_accepts_key_in_body(self, client, subaccount):
        payload = evolution_event(subaccount, "presence.update", {})
        payload["apikey"] = INGRESS_KEY

        response = client.post("/webhook/evolution", json=payload)

        assert response.json() == {"status": "ok", "events": 0, "results": []}

    def test_unknown_instance_is_ignored(self, client):
        response = client.post(
            "/webhook/evolution",
            json={"event": "messages.upsert", "instance": "someone_else", "data": {}},
            headers={"apikey": INGRESS_KEY},
        )
        assert response.json() == {"status": "ignored", "reason": "unknown_instance"}

    def test_inbound_message_is_processed_once(self, client, subaccount, auth):
        pair(client, subaccount, auth)
        payload = evolution_event(
            subaccount,
            "messages.upsert",
            {
                "key": {"id": "WA1", "remoteJid": f"{CONTACT}@s.whatsapp.net", "fromMe": False},
                "pushName": "Maria",
                "message": {"conversation": "Ciao"},
            },
        )

        first = client.post("/webhook/evolution", json=payload, headers={"apikey": INGRESS_KEY}).json()
        second = client.post("/webhook/evolution", json=payload, headers={"apikey": INGRESS_KEY}).json()

        assert first["results"][0]["status"] == "processed"
        assert second["results"][0]["reason"] == "duplicate"


class TestMessages:
    def test_send_requires_connection(self, client, auth):
        response = client.post("/api/whatsapp/messages", json={"to": CONTACT, "content": "hi"}, headers=auth)

        assert response.status_code == 409
        assert response.json()["code"] == "not_connected"

    def test_send_direct(self, client, subaccount, auth, stub_client):
        pair(client, subaccount, auth)

        response = client.post("/api/whatsapp/messages", json={"to": CONTACT, "content": "hi"}, headers=auth)

        assert response.status_code == 200
        body = response.json()
        assert body["direction"] == "outbound"
        assert body["to"] == CONTACT
        assert stub_client.sent_messages[0]["text"] == "hi"

    def test_invalid_message(self, client, subaccount, auth):
        pair(client, subaccount, auth)

        response = client.post(
            "/api/whatsapp/messages", json={"to": CONTACT, "type": "image", "content": "no media"}, headers=auth
        )

        assert response.status_code == 422
        assert response.json()["code"] == "invalid_message"

    def test_send_through_queue(self, client, subaccount, auth, stub_client):
        pair(client, subaccount, auth)

        response = client.post(
            "/api/whatsapp/messages", json={"to": CONTACT, "content": "queued", "queue": True}, headers=auth
        )

        assert response.json()["queued"] is True
        wait_for_queue(client, auth)
        assert [m["text"] for m in stub_client.sent_messages] == ["queued"]


class TestQueueEndpoints:
    def test_rate_limit_and_controls(self, client, subaccount, auth, stub_client):
        pair(client, subaccount, auth)

        response = client.post("/api/queue/rate-limit", json={"delayBetweenMessages": 0}, headers=auth)
        assert response.json()["rate_limit"]["delay_between_messages"] == 0

        assert client.post("/api/queue/pause", headers=auth).json()["paused"] is True
        for text in ("one", "two"):
            client.post("/api/whatsapp/messages", json={"to": CONTACT, "content": text, "queue": True}, headers=auth)

        status = client.get("/api/queue/status", headers=auth).json()
        assert status["paused"] is True
        assert status["queue_length"] == 2

        assert client.post("/api/queue/clear", headers=auth).json()["cleared"] == 2
        client.post("/api/whatsapp/messages", json={"to": CONTACT, "content": "three", "queue": True}, headers=auth)
        assert client.post("/api/queue/resume", headers=auth).json()["paused"] is False

        wait_for_queue(client, auth)
        assert [m["text"] for m in stub_client.sent_messages] == ["three"]

    def test_invalid_rate_limit(self, client, auth):
        response = client.post("/api/queue/rate-limit", json={"delayBetweenMessages": -5}, headers=auth)
        assert response.status_code == 422


class TestCRMWebhook:
    def test_outbound_message_is_dripped(self, client, subaccount, auth, stub_client):
        pair(client, subaccount, auth)

        response = client.post(
            "/webhook/ghl",
            json={
                "type": "OutboundMessage",
                "locationId": "loc_acme",
                "contactId": "c1",
                "phone": f"+{CONTACT}",
                "message": "See attached",
                "attachments": [{"url": "https://cdn.example.com/quote.pdf", "type": "application/pdf"}],
            },
        )

        assert response.json() == {"success": True, "messages": 1}
        wait_for_queue(client, auth)
        [sent] = stub_client.sent_messages
        assert sent["kind"] == "document"
        assert sent["text"] == "See attached"
        assert sent["file_name"] == "quote.pdf"

    def test_not_connected_is_acknowledged(self, client, subaccount, stub_client):
        response = client.post(
            "/webhook/ghl",
            json={"type": "SMS", "locationId": "loc_acme", "phone": CONTACT, "message": "hi"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert stub_client.sent_messages == []

    def test_other_event_types_are_ignored(self, client):
        response = client.post("/webhook/ghl", json={"type": "ContactCreate", "locationId": "loc_acme"})
        assert response.json() == {"success": True, "ignored": "ContactCreate"}


class TestSessionClientConfig:
    def test_evolution_client_gets_webhook_url(self):
        from basecore.settings import Settings
        from connector_api.main import build_session_client
        from ghl_whatsapp.session.evolution import EvolutionSessionClient

        client = build_session_client(
            Settings(
                WHATSAPP_PROVIDER="evolution",
                EVOLUTION_API_URL="https://evolution.example.com",
                EVOLUTION_API_KEY="global-key",
                EVOLUTION_WEBHOOK_URL="https://connector.example.com/webhook/evolution",
            )
        )

        assert isinstance(client, EvolutionSessionClient)
        assert client.webhook_url == "https://connector.example.com/webhook/evolution"

    def test_stub_is_the_default_provider(self):
        from basecore.settings import Settings
        from connector_api.main import build_session_client
        from ghl_whatsapp.session.stub import StubSessionClient

        assert isinstance(build_session_client(Settings(WHATSAPP_PROVIDER="stub")), StubSessionClient)
