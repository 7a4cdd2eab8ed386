"""
Evolution API Webhook Utilities

Normalizes Evolution API webhooks into session events.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from ghl_whatsapp.session.base import (
    LID_SUFFIX,
    PHONE_SUFFIX,
    ConnectionUpdate,
    IdentityHint,
    MessageEvent,
    QrEvent,
    SessionEvent,
    jid_user,
)

logger = logging.getLogger(__name__)


def normalize_event_name(event: str) -> str:
    """
    Evolution sends either "messages.upsert" or "MESSAGES_UPSERT" depending on config.
    """
    return event.strip().lower().replace("_", ".").replace("-", ".")


def extract_instance_name(payload: dict[str, Any]) -> str | None:
    """
    Extract instance name from webhook payload.

    This is used for tenant resolution before full parsing.
    """
    return payload.get("instance")


def validate_api_key(request_headers: dict[str, str], expected_api_key: str) -> bool:
    """
    Validate API key from request headers.

    Evolution API can send API key in:
    - Header: "apikey"
    - Header: "Authorization: Bearer <key>"
    - Body field "apikey" (checked by the caller)
    """
    headers = {k.lower(): v for k, v in request_headers.items()}
    if headers.get("apikey") == expected_api_key:
        return True

    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:] == expected_api_key:
        return True

    return False


def parse_evolution_event(payload: dict[str, Any], tenant_id: UUID) -> list[SessionEvent]:
    """
    Parse an Evolution API webhook into session events.

    Evolution API webhook format:
    {
        "event": "messages.upsert",
        "instance": "subaccount_<uuid>",
        "data": {...},
    }

    Unknown events and status-only updates yield no events.
    """
    event = normalize_event_name(payload.get("event") or "")
    data = payload.get("data") or {}

    if event == "qrcode.updated":
        qr = data.get("qrcode") or {}
        qr_code = qr.get("base64") or data.get("base64")
        return [QrEvent(tenant_id=tenant_id, qr_code=qr_code)] if qr_code else []

    if event == "connection.update":
        return [_parse_connection(data, tenant_id)]

    if event in ("messages.upsert", "messages.update"):
        items = data if isinstance(data, list) else [data]
        events: list[SessionEvent] = []
        for item in items:
            # messages.update without a message body is a delivery status
            if event == "messages.update" and "message" not in item:
                continue
            parsed = _parse_message(item, tenant_id)
            if parsed:
                events.append(parsed)
        return events

    if event in ("contacts.upsert", "contacts.update", "lid.mapping.update"):
        items = data if isinstance(data, list) else [data]
        return [hint for hint in (_parse_identity_hint(item, tenant_id) for item in items) if hint]

    logger.debug(f"Ignoring Evolution event {event}", extra={"event": event})
    return []


def _parse_connection(data: dict[str, Any], tenant_id: UUID) -> ConnectionUpdate:
    state = data.get("state") or data.get("connection") or "close"
    status_code = data.get("statusReason")
    try:
        status_code = int(status_code) if status_code is not None else None
    except (TypeError, ValueError):
        status_code = None

    return ConnectionUpdate(
        tenant_id=tenant_id,
        state=state,
        me_jid=data.get("wuid") or data.get("ownerJid"),
        status_code=status_code,
        reason=data.get("reason"),
    )


def _parse_message(data: dict[str, Any], tenant_id: UUID) -> MessageEvent | None:
    key = data.get("key") or {}
    message_id = key.get("id") or data.get("keyId")
    remote_jid = key.get("remoteJid") or data.get("remoteJid")
    if not message_id or not remote_jid:
        logger.warning("Evolution message without key", extra={"data_keys": sorted(data)})
        return None

    # Newer gateway versions report the phone JID next to LID senders
    alt_jid = key.get("remoteJidAlt") or key.get("senderPn") or data.get("senderPn")
    if alt_jid and PHONE_SUFFIX not in alt_jid:
        alt_jid = f"{alt_jid}{PHONE_SUFFIX}"

    timestamp = None
    if data.get("messageTimestamp"):
        try:
            timestamp = datetime.utcfromtimestamp(int(data["messageTimestamp"]))
        except (ValueError, TypeError):
            timestamp = None

    return MessageEvent(
        tenant_id=tenant_id,
        provider_message_id=message_id,
        remote_jid=remote_jid,
        from_me=bool(key.get("fromMe")),
        message=data.get("message"),
        push_name=data.get("pushName"),
        alt_jid=alt_jid,
        participant=key.get("participant"),
        timestamp=timestamp,
        raw=data,
    )


def _parse_identity_hint(data: dict[str, Any], tenant_id: UUID) -> IdentityHint | None:
    """Contact sync and LID mapping entries that pair an opaque id with a phone."""
    lid = data.get("lid")
    phone = data.get("pn") or data.get("phoneNumber")
    contact_id = data.get("remoteJid") or data.get("id") or ""

    if not lid and contact_id.endswith(LID_SUFFIX):
        lid = contact_id
    if not phone and contact_id.endswith(PHONE_SUFFIX):
        phone = contact_id
    if not lid or not phone:
        return None

    return IdentityHint(
        tenant_id=tenant_id,
        whatsapp_id=jid_user(lid),
        phone_number=jid_user(phone),
        name=data.get("pushName") or data.get("name") or data.get("notify"),
    )
