"""
Order Service — State-change event publisher

Publishes every committed transition on the order_events channel so other
services (search, analytics) can project it. Same best-effort policy as
notifications: the audit trail in the database is the source of truth.
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import OrderEvent

logger = logging.getLogger(__name__)

EVENT_CHANNEL = "order_events"


class RedisEventPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = EVENT_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: OrderEvent) -> None:
        try:
            await self.redis.publish(self.channel, json.dumps({
                "event_type": event.event_type,
                "data": event.payload(),
            }, default=str))
        except (RedisError, OSError):
            logger.warning(
                "Failed to publish %s for order %s",
                event.event_type, event.order_id, exc_info=True,
            )
