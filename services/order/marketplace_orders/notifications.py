"""
Order Service — Notification Sink

User-facing notifications are published on the order_notifications Redis
channel; the notification service stores them and delivers them to the app
and by email.

Notifications are best-effort. By the time one is sent the transition that
caused it is already committed, so a Redis failure is logged and dropped,
never raised back into the engine.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "order_notifications"


class NotificationKind(str, Enum):
    NEW_ORDER = "new_order"
    PAYMENT_CONFIRMED = "payment_confirmed"
    COMMIT_REMINDER = "commit_reminder"
    SELLER_COMMITTED = "seller_committed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class RedisNotificationSink:
    def __init__(self, redis: aioredis.Redis, channel: str = NOTIFICATION_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        order_id: str,
        message: str,
    ) -> bool:
        """Publish one notification. Returns False if it could not be sent."""
        payload = {
            "recipient_id": user_id,
            "kind": kind.value,
            "order_id": order_id,
            "message": message,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "read": False,
        }
        try:
            await self.redis.publish(self.channel, json.dumps(payload))
        except (RedisError, OSError):
            logger.warning(
                "Dropped %s notification for order %s to user %s",
                kind.value, order_id, user_id, exc_info=True,
            )
            return False
        return True
