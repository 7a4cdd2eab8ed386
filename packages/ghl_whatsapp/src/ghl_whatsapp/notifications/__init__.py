from ghl_whatsapp.notifications.producer import EventStreamProducer
from ghl_whatsapp.notifications.webhook import WebhookDispatcher

__all__ = ["EventStreamProducer", "WebhookDispatcher"]
