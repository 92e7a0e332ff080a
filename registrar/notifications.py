import logging
from typing import Optional

import redis

from shared.events import Event

logger = logging.getLogger(__name__)

EMAIL_CHANNEL = 'notifications:email'


class Notifier:
    """
    Fire-and-forget dispatch of notification events.

    Events are published on a Redis channel consumed by an out-of-process
    mailer. Without a Redis client events are only logged.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, channel: str = EMAIL_CHANNEL):
        self.redis = redis_client
        self.channel = channel

    def dispatch(self, event: Event) -> bool:
        if not self.redis:
            logger.debug(f"Notification {event.type} for {event.entity_id} (no transport configured)")
            return False

        try:
            self.redis.publish(self.channel, event.to_json())
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to dispatch notification {event.type} for {event.entity_id}: {e}")
            return False
