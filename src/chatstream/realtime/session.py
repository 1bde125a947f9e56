"""Streaming session — one per open event stream.

Learn: The session is a small state machine driven by a single loop:

    CONNECTING ──subscribe ok──▶ LISTENING ──disconnect / fatal──▶ TERMINATING ─▶ CLOSED
        │                                                              ▲
        └──────────── ChannelUnavailable (emit `error`) ───────────────┘

Each LISTENING iteration:
1. Has the client gone away? → TERMINATING (normal, not an error)
2. Poll the channel for at most `poll_interval` seconds
3. On a notification: look the message up, emit `message`
4. Keep-alive due? → emit `keepalive`

`connected` is emitted on every entry into LISTENING and never before a
subscription exists, so a client that sees it knows the stream is live.
Once the loop leaves LISTENING nothing more is emitted; a fatal `error`
event is always the last thing on the wire.

The subscription is released in a `finally`, so it is released whether
the loop ends normally, on error, or because the response task was
cancelled (sse-starlette cancels on client disconnect).

Failure policy:
- MalformedPayload → log, keep polling
- LookupFailure (transient storage error) → log, skip the event
- message not found → log, skip (deleted, or a stale notification)
- ChannelUnavailable → one `error` event, then close
- anything else from the lookup → one `error` event, then close
"""

import enum
import itertools
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog
from sse_starlette.sse import ServerSentEvent

from chatstream.realtime.channel import (
    ChannelUnavailable,
    MalformedPayload,
    NotificationChannel,
    Subscription,
)
from chatstream.realtime.events import (
    connected_event,
    error_event,
    keepalive_event,
    message_event,
)
from chatstream.services.message_service import LookupFailure, MessageResolver

logger = structlog.get_logger()

_session_ids = itertools.count(1)


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    LISTENING = "listening"
    TERMINATING = "terminating"
    CLOSED = "closed"


class StreamingSession:
    """Turns one channel subscription into a stream of SSE events."""

    def __init__(
        self,
        channel: NotificationChannel,
        resolve_message: MessageResolver,
        is_disconnected: Callable[[], Awaitable[bool]],
        *,
        channel_name: str = "new_message",
        poll_interval: float = 0.25,
        keepalive_interval: float = 30.0,
        user_id: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], float] = time.time,
    ):
        self.channel = channel
        self.resolve_message = resolve_message
        self.is_disconnected = is_disconnected
        self.channel_name = channel_name
        self.poll_interval = poll_interval
        self.keepalive_interval = keepalive_interval
        self.clock = clock
        self.wallclock = wallclock

        self.id = next(_session_ids)
        self.state = SessionState.CONNECTING
        self.handle: Optional[Subscription] = None
        self.last_keepalive: Optional[float] = None
        self.delivered = 0
        self.log = logger.bind(session_id=self.id, user_id=user_id)

    async def events(self) -> AsyncIterator[ServerSentEvent]:
        """Run the session. Iterating this generator *is* the session."""
        try:
            self.handle = await self.channel.subscribe(self.channel_name)
        except ChannelUnavailable as e:
            self.log.warning("stream.channel_unavailable", error=str(e))
            yield error_event("Failed to connect to database")
            self.state = SessionState.CLOSED
            return

        try:
            yield connected_event()
            self.state = SessionState.LISTENING
            self.last_keepalive = self.clock()
            self.log.info("stream.connected", channel=self.channel_name)

            while self.state is SessionState.LISTENING:
                for event in await self._step():
                    yield event
        finally:
            self.state = SessionState.TERMINATING
            await self.channel.unsubscribe(self.handle)
            self.state = SessionState.CLOSED
            self.log.info("stream.closed", delivered=self.delivered)

    async def _step(self) -> list[ServerSentEvent]:
        """One LISTENING iteration. Returns the events to emit, in order."""
        if await self.is_disconnected():
            self.log.info("stream.client_disconnected")
            self.state = SessionState.TERMINATING
            return []

        try:
            notification = await self.channel.poll(self.handle, self.poll_interval)
        except MalformedPayload as e:
            self.log.warning("stream.invalid_payload", payload=e.raw, reason=e.reason)
            notification = None
        except ChannelUnavailable as e:
            self.log.warning("stream.channel_lost", error=str(e))
            self.state = SessionState.TERMINATING
            return [error_event("Lost connection to notification channel")]

        out = []
        if notification is not None:
            try:
                payload = await self.resolve_message(notification.message_id)
            except LookupFailure as e:
                self.log.warning(
                    "stream.lookup_failed",
                    message_id=notification.message_id,
                    error=str(e),
                )
            except Exception:
                self.log.exception(
                    "stream.message_fetch_error", message_id=notification.message_id
                )
                self.state = SessionState.TERMINATING
                return [error_event("Error fetching message")]
            else:
                if payload is None:
                    self.log.warning(
                        "stream.message_not_found", message_id=notification.message_id
                    )
                else:
                    self.delivered += 1
                    out.append(message_event(payload))

        now = self.clock()
        if now - self.last_keepalive >= self.keepalive_interval:
            self.last_keepalive = now
            out.append(keepalive_event(self.wallclock()))
        return out
