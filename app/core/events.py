import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from app.core.redis_cache import RedisCache

logger = logging.getLogger(__name__)

SUBSCRIPTION_CHANNEL = "subscription_changed"


class SubscriptionEvent(BaseModel):
    """Published after a mutation changed a user's subscription record"""
    user_id: str
    action: str  # 'created', 'usage', 'upgraded', 'cancelled', 'expired', 'usage_reset'
    plan_id: str
    status: str
    occurred_at: datetime


SubscriptionListener = Callable[[SubscriptionEvent], None]


class SubscriptionEventBus:
    """
    Notification channel for subscription changes.

    Listeners registered in this process are called synchronously in
    registration order. When a Redis cache is attached the event is also
    published on SUBSCRIPTION_CHANNEL for other processes.
    """

    def __init__(self, cache: Optional[RedisCache] = None, channel: str = SUBSCRIPTION_CHANNEL):
        self.cache = cache
        self.channel = channel
        self._listeners: list[SubscriptionListener] = []

    def subscribe(self, listener: SubscriptionListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SubscriptionListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: SubscriptionEvent):
        logger.info(f"publish: Entry - user: {event.user_id}, action: {event.action}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                # A broken consumer must not undo a committed change
                logger.error(f"publish: Listener failure - {getattr(listener, '__name__', listener)}: {e}")

        if self.cache is not None:
            self.cache.publish(self.channel, event.model_dump(mode="json"))
