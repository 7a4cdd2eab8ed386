"""
Tenant Webhook Dispatcher

Delivers connector events to the tenant's configured webhook:
- Payload {event, sub_account_id, timestamp, data}
- X-Webhook-Signature: HMAC-SHA256 (hex) of the body with the subscription secret
- Success resets the failure counter; enough consecutive failures disable the webhook

Never raises: delivery problems are logged and counted.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
import redis
from sqlalchemy.orm import sessionmaker

from basecore.db import session_scope
from ghl_whatsapp.contracts.envelope import ConnectorEnvelope
from ghl_whatsapp.contracts.event_types import WILDCARD_EVENT
from ghl_whatsapp.notifications.producer import EventStreamProducer
from ghl_whatsapp.persistence.repo import ConnectorRepository

logger = logging.getLogger(__name__)


def sign_payload(body: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of a webhook body."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(body: str, signature: str, secret: str) -> bool:
    """Constant-time check of a webhook signature (for receivers and tests)."""
    return hmac.compare_digest(sign_payload(body, secret), signature or "")


class WebhookDispatcher:
    """Fire-and-forget signed callbacks to tenant webhooks."""

    def __init__(
        self,
        session_factory: sessionmaker,
        producer: EventStreamProducer | None = None,
        timeout: float = 10.0,
        max_failures: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.session_factory = session_factory
        self.producer = producer
        self.timeout = timeout
        self.max_failures = max_failures
        self.transport = transport

    async def trigger(self, tenant_id: UUID, event: str, data: dict[str, Any]) -> bool:
        """
        Publish an event and deliver it to the tenant's webhook.

        Returns:
            True if a webhook accepted the event
        """
        envelope = ConnectorEnvelope.create(event_type=str(event), tenant_id=tenant_id, payload=data)

        if self.producer is not None:
            try:
                self.producer.publish(envelope)
            except redis.RedisError as e:
                logger.error(f"Failed to publish event to stream: {e}", extra={"event": envelope.event_type})

        with session_scope(self.session_factory) as db:
            webhook = ConnectorRepository(db).get_active_webhook(tenant_id)
            if webhook is None:
                return False
            events = webhook.events or []
            if envelope.event_type not in events and WILDCARD_EVENT not in events:
                return False
            webhook_id, url, secret = webhook.id, webhook.url, webhook.secret

        body = json.dumps(envelope.to_webhook_body(), default=str)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": envelope.event_type,
        }
        if secret:
            headers["X-Webhook-Signature"] = sign_payload(body, secret)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            self._record_failure(webhook_id, tenant_id, envelope.event_type, e)
            return False

        self._record_success(webhook_id)
        logger.info("Webhook delivered", extra={"tenant_id": str(tenant_id), "event": envelope.event_type})
        return True

    def _record_success(self, webhook_id: UUID) -> None:
        with session_scope(self.session_factory) as db:
            webhook = ConnectorRepository(db).get_webhook(webhook_id)
            if webhook is not None:
                webhook.failure_count = 0
                webhook.last_triggered_at = datetime.utcnow()

    def _record_failure(self, webhook_id: UUID, tenant_id: UUID, event: str, error: Exception) -> None:
        with session_scope(self.session_factory) as db:
            webhook = ConnectorRepository(db).get_webhook(webhook_id)
            if webhook is None:
                return
            webhook.failure_count = (webhook.failure_count or 0) + 1
            if webhook.failure_count >= self.max_failures:
                webhook.is_active = False
                logger.warning(
                    f"Webhook disabled after {webhook.failure_count} failures",
                    extra={"tenant_id": str(tenant_id), "webhook_id": str(webhook_id)},
                )
            failures = webhook.failure_count

        logger.error(
            f"Webhook delivery failed: {error}",
            extra={"tenant_id": str(tenant_id), "event": event, "failure_count": failures},
        )
