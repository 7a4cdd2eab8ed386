"""
Connector errors.

All errors raised by the connector derive from ConnectorError so the API
layer can map them to HTTP responses in one place.
"""

from typing import Any


class ConnectorError(Exception):
    """Base error for the connector."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class SubAccountNotFoundError(ConnectorError):
    """No sub-account with the given id."""

    def __init__(self, tenant_id: Any):
        super().__init__(f"Sub-account not found: {tenant_id}", code="subaccount_not_found")


class SubAccountInactiveError(ConnectorError):
    """Sub-account exists but is disabled or unpaid."""

    def __init__(self, tenant_id: Any):
        super().__init__(f"Sub-account is not active: {tenant_id}", code="subaccount_inactive")


class NotConnectedError(ConnectorError):
    """Operation requires a connected WhatsApp session."""

    def __init__(self, tenant_id: Any):
        super().__init__(f"WhatsApp not connected for sub-account {tenant_id}", code="not_connected")


class InvalidMessageError(ConnectorError):
    """Outbound message failed validation."""

    def __init__(self, message: str):
        super().__init__(message, code="invalid_message")


class SessionError(ConnectorError):
    """Error from the WhatsApp session gateway."""


class CRMError(ConnectorError):
    """Error from the CRM API."""
