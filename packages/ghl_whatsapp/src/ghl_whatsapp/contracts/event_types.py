"""
Connector Event Types

Events the connector emits to tenant webhooks and the event stream.
"""

from enum import Enum


class ConnectorEventType(str, Enum):
    """
    Event types published by the connector.

    - CONNECTION_QR: A new QR code is ready to scan
    - CONNECTION_STATUS: Session connected, disconnected, or rejected
    - MESSAGE_RECEIVED: A contact sent a message
    - MESSAGE_SENT: A message went out (API, queue, or the operator's own phone)
    - MESSAGE_FAILED: A queued message was dropped after its last attempt
    """

    CONNECTION_QR = "connection.qr"
    CONNECTION_STATUS = "connection.status"
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"
    MESSAGE_FAILED = "message.failed"

    def __str__(self) -> str:
        return self.value


WILDCARD_EVENT = "*"
