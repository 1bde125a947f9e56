"""Change notification channel — the bridge from committed writes to live streams.

Learn: A channel hands out subscriptions. Each subscription is a lazy,
non-restartable sequence of notifications read with a bounded-wait poll:

    handle = await channel.subscribe("new_message")
    try:
        while ...:
            note = await channel.poll(handle, timeout=0.25)  # None on timeout
    finally:
        await channel.unsubscribe(handle)

Polling with a short timeout (instead of blocking forever) lets one loop
interleave three concerns: notification receipt, keep-alives, and
disconnect detection.

Delivery is fire-and-forget, like any pub/sub: if nobody is subscribed when
a notification fires, it is gone. Clients refetch history on reconnect.

Every backend keeps one FIFO queue per subscription, filled in the order
the transport delivers. Nothing re-sorts or merges queues, so per-session
order is exactly channel order.
"""

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import structlog

logger = structlog.get_logger()

_handle_ids = itertools.count(1)


class ChannelError(Exception):
    """Base class for notification channel failures."""


class ChannelUnavailable(ChannelError):
    """The channel cannot be opened, or an open subscription lost its transport.

    Fatal for the session holding the subscription. The channel never
    retries on its own; the client reconnects and gets a fresh session.
    """


class MalformedPayload(ChannelError):
    """A notification arrived but is not a JSON object with an integer id.

    Recoverable: the subscription is still healthy.
    """

    def __init__(self, raw: Any, reason: str):
        super().__init__(f"Malformed notification payload ({reason}): {raw!r}"[:300])
        self.raw = raw
        self.reason = reason


@dataclass
class Notification:
    """A decoded notification. `data` is the full published object."""

    channel: str
    message_id: int
    data: dict[str, Any]


@dataclass
class Subscription:
    """Handle returned by subscribe(). Owned by exactly one session."""

    channel: str
    max_pending: int = 1000
    id: int = field(default_factory=lambda: next(_handle_ids))
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    closed: bool = False
    broken: Optional[str] = None  # reason, once the transport is gone
    resource: Any = None  # backend-specific (asyncpg connection, PubSub, ...)

    def deliver(self, raw: Any) -> None:
        """Queue a raw payload. Called from the transport's callback."""
        if self.closed or self.broken:
            return
        if self.queue.qsize() >= self.max_pending:
            # Dropping silently would break at-least-once for this client.
            self.mark_broken("subscriber fell behind")
            return
        self.queue.put_nowait(raw)

    def mark_broken(self, reason: str) -> None:
        if self.broken is None:
            self.broken = reason
            logger.warning(
                "channel.subscription_broken",
                subscription_id=self.id,
                channel=self.channel,
                reason=reason,
            )


def decode_payload(channel: str, raw: Any) -> Notification:
    """Decode a raw NOTIFY/PUBLISH payload into a Notification.

    Raises MalformedPayload when the payload is not a JSON object
    carrying an integer `id`.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPayload(raw, "not utf-8")
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        raise MalformedPayload(raw, "not JSON")
    if not isinstance(data, dict):
        raise MalformedPayload(raw, "not an object")

    message_id = data.get("id")
    # bool is an int subclass; "true" is not an id
    if isinstance(message_id, bool) or not isinstance(message_id, int):
        raise MalformedPayload(raw, "missing integer id")
    return Notification(channel=channel, message_id=message_id, data=data)


class NotificationChannel(ABC):
    """subscribe / poll / unsubscribe contract shared by every backend."""

    name = "abstract"

    def __init__(self, max_pending: int = 1000):
        self.max_pending = max_pending
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    # ─── Lifecycle ───────────────────────────────────────

    async def start(self) -> None:
        """Process-level startup. Most backends connect lazily."""

    async def close(self) -> None:
        """Process-level shutdown: release every open subscription."""
        for handle in list(self._subscriptions.values()):
            await self.unsubscribe(handle)

    # ─── Contract ────────────────────────────────────────

    async def subscribe(self, channel_name: str) -> Subscription:
        """Open a subscription on `channel_name`.

        Raises ChannelUnavailable if the backend cannot listen.
        """
        handle = Subscription(channel=channel_name, max_pending=self.max_pending)
        await self._open(handle)
        self._subscriptions[handle.id] = handle
        logger.info(
            "channel.subscribed",
            backend=self.name,
            channel=channel_name,
            subscription_id=handle.id,
            active=self.active_subscriptions,
        )
        return handle

    async def poll(
        self, handle: Subscription, timeout: float
    ) -> Optional[Notification]:
        """Wait at most `timeout` seconds for the next notification.

        Returns None on timeout. Raises MalformedPayload for a bad payload
        (the subscription stays usable) and ChannelUnavailable once the
        subscription's transport is gone.
        """
        if handle.closed:
            raise ChannelUnavailable("subscription is closed")
        # Drain what was queued before the break so nothing already
        # received is lost.
        if handle.broken and handle.queue.empty():
            raise ChannelUnavailable(handle.broken)

        raw = await self._receive(handle, timeout)
        if raw is None:
            if handle.broken:
                raise ChannelUnavailable(handle.broken)
            return None
        return decode_payload(handle.channel, raw)

    async def unsubscribe(self, handle: Subscription) -> None:
        """Release the subscription. Idempotent, safe on broken handles."""
        if handle.closed:
            return
        handle.closed = True
        self._subscriptions.pop(handle.id, None)
        try:
            await self._close(handle)
        except Exception:
            # The transport may already be dead; the handle is released either way.
            logger.warning(
                "channel.unsubscribe_failed",
                backend=self.name,
                subscription_id=handle.id,
                exc_info=True,
            )
        logger.info(
            "channel.unsubscribed",
            backend=self.name,
            channel=handle.channel,
            subscription_id=handle.id,
            active=self.active_subscriptions,
        )

    @asynccontextmanager
    async def subscription(self, channel_name: str) -> AsyncIterator[Subscription]:
        """Scoped subscribe: the handle is released on every exit path."""
        handle = await self.subscribe(channel_name)
        try:
            yield handle
        finally:
            await self.unsubscribe(handle)

    async def publish_committed(self, channel_name: str, payload: dict) -> None:
        """Hook called by the write path after a message commit.

        Storage-backed channels publish from the insert trigger inside the
        commit, so this is a no-op for them. Channels that are not the
        storage engine override it.
        """

    # ─── Backend hooks ───────────────────────────────────

    @abstractmethod
    async def _open(self, handle: Subscription) -> None:
        """Register the listen for `handle`. Raise ChannelUnavailable on failure."""

    @abstractmethod
    async def _close(self, handle: Subscription) -> None:
        """Undo _open. May be called on a broken handle."""

    async def _receive(self, handle: Subscription, timeout: float) -> Optional[Any]:
        """Default: bounded wait on the handle's queue."""
        try:
            return await asyncio.wait_for(handle.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
