"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan owns the process-wide resources:
- the notification channel (stored on app.state and handed to every
  streaming session explicitly, never imported as a global)
- the Redis pool (rate limiting; optional)
- the database engine
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatstream import __version__
from chatstream.api import api_router
from chatstream.config import settings
from chatstream.realtime.backends import build_notification_channel

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "chatstream.starting",
        version=__version__,
        environment=settings.environment,
        notify_backend=settings.notify_backend,
        port=settings.port,
    )

    from chatstream.realtime.pubsub import close_redis, init_redis
    try:
        await init_redis()
        logger.info("chatstream.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Redis only backs rate limiting unless it is the notify backend
        logger.warning("chatstream.redis_unavailable", error=str(e))

    channel = build_notification_channel(settings)
    await channel.start()
    app.state.notification_channel = channel
    logger.info("chatstream.channel_ready", backend=channel.name)

    yield

    logger.info("chatstream.shutdown", open_streams=channel.active_subscriptions)
    await channel.close()
    app.state.notification_channel = None

    await close_redis()

    from chatstream.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="chatstream",
        description="Real-time chat message delivery over Server-Sent Events",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from chatstream.middleware.rate_limit import RateLimitMiddleware
    from chatstream.middleware.request_id import RequestIdMiddleware
    from chatstream.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RateLimitMiddleware, default_rpm=settings.rate_limit_rpm)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    return app


# Default app instance (used by uvicorn: chatstream.main:app)
app = create_app()
