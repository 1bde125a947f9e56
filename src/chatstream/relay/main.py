"""Relay entry point — run as a separate process.

Only needed with CHATSTREAM_NOTIFY_BACKEND=redis (multi-node web tier).
Tuned with the CHATSTREAM_RELAY_* settings:

    CHATSTREAM_RELAY_MAX_PENDING=10000           # queue bound before a reset
    CHATSTREAM_RELAY_RECONNECT_DELAY=3           # seconds between LISTEN attempts
    CHATSTREAM_RELAY_PUBLISH_RETRY_DELAY=0.5     # first Redis retry, doubles
    CHATSTREAM_RELAY_MAX_PUBLISH_RETRY_DELAY=10

Usage:
    chatstream-relay
"""

import asyncio
import logging
import signal

from sqlalchemy.engine import make_url

from chatstream.config import Settings, settings
from chatstream.relay.relay import NotifyRelay, RelayConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("chatstream.relay")


def _redact(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


def relay_config(s: Settings) -> RelayConfig:
    return RelayConfig(
        database_url=s.listen_dsn,
        redis_url=s.redis_url,
        channels=[s.notify_channel],
        max_pending=s.relay_max_pending,
        reconnect_delay=s.relay_reconnect_delay,
        publish_retry_delay=s.relay_publish_retry_delay,
        max_publish_retry_delay=s.relay_max_publish_retry_delay,
    )


async def run(config: RelayConfig):
    relay = NotifyRelay(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(relay.stop()))

    logger.info(
        "Relaying %s from %s to %s",
        ", ".join(config.channels),
        _redact(config.database_url),
        _redact(config.redis_url),
    )
    try:
        await relay.start()
    finally:
        logger.info("Relay stopped. Stats: %s", relay.get_stats())


def main():
    """Console script: chatstream-relay."""
    if settings.notify_backend != "redis":
        logger.warning(
            "CHATSTREAM_NOTIFY_BACKEND=%s: web nodes are not reading from Redis, "
            "so nothing will consume what the relay publishes",
            settings.notify_backend,
        )
    asyncio.run(run(relay_config(settings)))


if __name__ == "__main__":
    main()
