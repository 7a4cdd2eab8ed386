from ghl_whatsapp.contracts.envelope import ConnectorEnvelope
from ghl_whatsapp.contracts.event_types import ConnectorEventType

__all__ = ["ConnectorEnvelope", "ConnectorEventType"]
