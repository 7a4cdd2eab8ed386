"""
Connector Event Stream Producer

Appends connector events to a Redis Stream for downstream consumers.
"""

import logging

import redis

from basecore.redis import publish_to_stream
from ghl_whatsapp.contracts.envelope import ConnectorEnvelope

logger = logging.getLogger(__name__)

EVENTS_STREAM = "ghlwa:events"


class EventStreamProducer:
    """Producer for publishing connector events to Redis Streams."""

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_name: str = EVENTS_STREAM,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.stream_name = stream_name
        self.max_len = max_len

    def publish(self, envelope: ConnectorEnvelope) -> str:
        """
        Publish an envelope to the events stream.

        Returns:
            Stream message ID
        """
        msg_id = publish_to_stream(self.redis, self.stream_name, envelope.to_stream_data(), max_len=self.max_len)

        logger.debug(
            f"Published to {self.stream_name}",
            extra={
                "stream": self.stream_name,
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
            },
        )
        return msg_id
