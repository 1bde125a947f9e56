"""Event stream endpoint — real-time message delivery over SSE.

Learn: Each client holds one GET /api/v1/events open (EventSource in the
browser, `chatstream tail` on the command line). The handler:
1. Authenticates (Bearer header or ?token= query param) — 401, no stream
2. Builds a StreamingSession around the process-wide notification channel
3. Returns it as an EventSourceResponse; Starlette runs it in its own task

Reconnects are the client's job: on stream close it waits (3s in the
bundled clients), opens a new stream and refetches /api/v1/messages.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from chatstream.auth.dependencies import CurrentIdentity, get_current_user
from chatstream.config import settings
from chatstream.db.engine import async_session_factory
from chatstream.realtime.channel import NotificationChannel
from chatstream.realtime.session import StreamingSession
from chatstream.services.message_service import MessageResolver, message_resolver

logger = structlog.get_logger()
router = APIRouter()


def get_notification_channel(request: Request) -> NotificationChannel:
    """The process-wide channel, created in the app lifespan."""
    channel = getattr(request.app.state, "notification_channel", None)
    if channel is None:
        raise HTTPException(status_code=503, detail="Notification channel not initialized")
    return channel


def get_message_resolver() -> MessageResolver:
    return message_resolver(async_session_factory, timeout=settings.lookup_timeout)


@router.get("/events")
async def stream_events(
    request: Request,
    identity: CurrentIdentity = Depends(get_current_user),
    channel: NotificationChannel = Depends(get_notification_channel),
    resolve: MessageResolver = Depends(get_message_resolver),
):
    """Stream `connected`, `message`, `keepalive` and `error` events."""
    session = StreamingSession(
        channel,
        resolve,
        request.is_disconnected,
        channel_name=settings.notify_channel,
        poll_interval=settings.poll_interval,
        keepalive_interval=settings.keepalive_interval,
        user_id=identity.user_id,
    )
    logger.info("stream.opening", session_id=session.id, user_id=identity.user_id)

    return EventSourceResponse(
        session.events(),
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
        ping=settings.sse_ping_interval,
    )
