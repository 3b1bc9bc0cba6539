import os
import logging
import redis
from .events import Event

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "multiplayer:sessions"


class PubSubClient:
    """Publishes session lifecycle events over redis pub/sub."""

    def __init__(self, redis_client: redis.Redis = None, redis_url: str = None):
        if redis_client is None:
            redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
            redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
        self.redis = redis_client

    def publish(self, channel: str, event: Event):
        self.redis.publish(channel, event.to_json())

    def publish_session_event(self, event: Event):
        """Fan an event out to the workspace channel and the global channel.

        Delivery is best effort: a redis outage must never fail a session
        operation that already changed cloud and database state.
        """
        try:
            if event.workspace_id is not None:
                self.publish(f"workspace:{event.workspace_id}:multiplayer", event)
            self.publish(GLOBAL_CHANNEL, event)
        except redis.RedisError as e:
            logger.warning(f"Failed to publish {event.type} for session {event.session_id}: {e}")
