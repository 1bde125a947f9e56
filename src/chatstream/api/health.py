"""Health check endpoint.

Learn: Reports the server plus each dependency the delivery pipeline
needs. Redis is only required when it backs the notification channel.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from chatstream import __version__
from chatstream.config import settings
from chatstream.db.engine import get_db

router = APIRouter()


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the message store
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    if settings.notify_backend == "redis":
        try:
            from redis.asyncio import from_url

            r = from_url(settings.redis_url)
            await r.ping()
            await r.aclose()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    channel = getattr(request.app.state, "notification_channel", None)
    if channel is None:
        checks["notifications"] = "error: not initialized"
    else:
        checks["notifications"] = "ok"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    body = {"status": status, **checks}
    if channel is not None:
        body["channel"] = {
            "backend": channel.name,
            "active_subscriptions": channel.active_subscriptions,
        }
    return body
