"""Redis connection management.

Learn: Redis is optional for a single node. It backs the rate limiter and,
with CHATSTREAM_NOTIFY_BACKEND=redis, the cluster-wide notification
channel fed by the relay process (chatstream.relay).

Redis pub/sub is fire-and-forget. If no one is listening, the message is
lost — same contract as pg_notify, so the session code doesn't care which
one it is reading from.

Channel naming: chatstream:{notify_channel}, e.g. chatstream:new_message

Reset markers: when the relay may have lost notifications (it reconnected
its LISTEN, or its queue overflowed) it publishes {"reset": "<reason>"}
on the channel. Subscribers treat that as a broken subscription, so every
stream closes with `error` and its client refetches history.
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from chatstream.config import settings

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None

RESET_KEY = "reset"


def redis_channel_name(channel_name: str) -> str:
    return f"chatstream:{channel_name}"


def reset_marker(reason: str) -> str:
    return json.dumps({RESET_KEY: reason})


def parse_reset_marker(data: Any) -> Optional[str]:
    """Return the reason if `data` is a reset marker, else None."""
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if not isinstance(data, str) or RESET_KEY not in data:
        return None
    try:
        obj = json.loads(data)
    except json.JSONDecodeError:
        return None
    if isinstance(obj, dict) and "id" not in obj and isinstance(obj.get(RESET_KEY), str):
        return obj[RESET_KEY]
    return None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection; an unreachable Redis leaves rate limiting off
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise
    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
