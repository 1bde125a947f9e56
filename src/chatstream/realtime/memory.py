"""In-process notification channel.

Learn: Same subscribe/poll/unsubscribe contract as the PostgreSQL
backends, with publish() standing in for the storage trigger. Used by
the test suite (deterministic, no database) and by single-process
development setups where the write path calls publish_committed()
after each commit.
"""

import json
from typing import Any

from chatstream.realtime.channel import (
    ChannelUnavailable,
    NotificationChannel,
    Subscription,
)


class InMemoryNotificationChannel(NotificationChannel):
    """Broadcast to every subscription of a channel name, in publish order."""

    name = "memory"

    def __init__(self, max_pending: int = 1000, available: bool = True):
        super().__init__(max_pending=max_pending)
        # False simulates a storage backend without pub/sub support.
        self.available = available
        self.published = 0

    async def _open(self, handle: Subscription) -> None:
        if not self.available:
            raise ChannelUnavailable("notification channel not supported by backend")

    async def _close(self, handle: Subscription) -> None:
        pass

    def publish(self, channel_name: str, payload: Any) -> int:
        """Fan a payload out to current subscribers. Returns how many got it.

        Dicts are serialized to JSON, mirroring pg_notify's text payloads;
        anything else is delivered as-is (handy for malformed-payload tests).
        """
        raw = json.dumps(payload, default=str) if isinstance(payload, dict) else payload
        receivers = 0
        for handle in list(self._subscriptions.values()):
            if handle.channel == channel_name and not handle.broken:
                handle.deliver(raw)
                receivers += 1
        self.published += 1
        return receivers

    async def publish_committed(self, channel_name: str, payload: dict) -> None:
        self.publish(channel_name, payload)

    def break_subscriptions(self, reason: str = "connection lost") -> None:
        """Simulate the transport dropping under every live subscription."""
        for handle in self._subscriptions.values():
            handle.mark_broken(reason)
