"""Redis pub/sub notification channel.

Learn: PostgreSQL NOTIFY only reaches listeners connected to the same
database server. When the web tier is scaled out and should read from a
shared bus instead, the relay process republishes every `new_message`
notification on Redis and web nodes subscribe here.

Each subscription owns its own PubSub object (and so its own Redis
connection); poll() is get_message() with a timeout.

The relay publishes a reset marker whenever notifications may have been
lost upstream. A subscription that reads one is marked broken, the same
as losing its own Redis connection.
"""

from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from chatstream.realtime.channel import (
    ChannelUnavailable,
    NotificationChannel,
    Subscription,
)
from chatstream.realtime.pubsub import parse_reset_marker, redis_channel_name

logger = structlog.get_logger()


class RedisNotificationChannel(NotificationChannel):
    """Cluster-wide channel fed by the relay.

    Learn: There is no local queue here, so `max_pending` does not apply.
    Undelivered messages wait in the PubSub connection, and Redis enforces
    the bound itself: a subscriber past `client-output-buffer-limit pubsub`
    is disconnected, get_message() raises, and the subscription is marked
    broken.
    """

    name = "redis"

    def __init__(self, redis_url: str):
        super().__init__()
        self.redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        await super().close()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _open(self, handle: Subscription) -> None:
        pubsub = self._client().pubsub()
        try:
            await pubsub.subscribe(redis_channel_name(handle.channel))
        except (RedisError, OSError) as e:
            await pubsub.aclose()
            raise ChannelUnavailable(f"Failed to subscribe on Redis: {e}") from e
        handle.resource = pubsub

    async def _close(self, handle: Subscription) -> None:
        pubsub, handle.resource = handle.resource, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
        finally:
            await pubsub.aclose()

    async def _receive(self, handle: Subscription, timeout: float) -> Optional[Any]:
        try:
            message = await handle.resource.get_message(
                ignore_subscribe_messages=True, timeout=timeout
            )
        except (RedisError, OSError) as e:
            handle.mark_broken(f"redis connection lost: {e}")
            return None
        if message is None or message.get("type") != "message":
            return None

        reason = parse_reset_marker(message["data"])
        if reason is not None:
            handle.mark_broken(f"notification stream reset: {reason}")
            return None
        return message["data"]
