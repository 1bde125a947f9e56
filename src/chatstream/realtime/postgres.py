"""PostgreSQL LISTEN/NOTIFY notification channels (asyncpg).

Learn: The `notify_new_message` trigger calls pg_notify() inside the
inserting transaction; PostgreSQL delivers it to every connection that
has issued LISTEN on the channel once the transaction commits.

A LISTEN registration belongs to one connection, so these connections are
opened with asyncpg directly and never come from the SQLAlchemy pool.

Two topologies, same contract:

1. DedicatedPostgresChannel — one connection per subscription. Simple and
   isolated, but N viewers means N backend connections.
2. SharedPostgresChannel — one listener connection per process. asyncpg
   invokes our callback for every NOTIFY and we copy the payload into
   each subscription's own queue, in arrival order. This is the default.
"""

import asyncio
from typing import Optional

import asyncpg
import structlog

from chatstream.realtime.channel import (
    ChannelUnavailable,
    NotificationChannel,
    Subscription,
)

logger = structlog.get_logger()

_CONNECT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


def _check_dsn(dsn: str) -> None:
    if not dsn.startswith(("postgresql://", "postgres://")):
        # e.g. SQLite: no pub/sub primitive to listen on
        raise ChannelUnavailable("PostgreSQL connection not available")


async def _connect(dsn: str, timeout: float) -> asyncpg.Connection:
    _check_dsn(dsn)
    try:
        return await asyncpg.connect(dsn, timeout=timeout)
    except _CONNECT_ERRORS as e:
        raise ChannelUnavailable(f"Failed to connect to database: {e}") from e


class DedicatedPostgresChannel(NotificationChannel):
    """One asyncpg connection per subscription."""

    name = "postgres-dedicated"

    def __init__(self, dsn: str, max_pending: int = 1000, connect_timeout: float = 5.0):
        super().__init__(max_pending=max_pending)
        self.dsn = dsn
        self.connect_timeout = connect_timeout

    async def _open(self, handle: Subscription) -> None:
        conn = await _connect(self.dsn, self.connect_timeout)

        def on_notify(connection, pid, channel, payload):
            handle.deliver(payload)

        def on_terminate(connection):
            handle.mark_broken("notification connection lost")

        conn.add_termination_listener(on_terminate)
        try:
            await conn.add_listener(handle.channel, on_notify)
        except BaseException as e:
            # Includes cancellation (client gone mid-LISTEN): the handle was
            # never registered, so nothing else would close this connection.
            # terminate() is synchronous and can't itself be interrupted.
            conn.terminate()
            if isinstance(e, _CONNECT_ERRORS):
                raise ChannelUnavailable(f"LISTEN {handle.channel} failed: {e}") from e
            raise
        handle.resource = (conn, on_notify, on_terminate)

    async def _close(self, handle: Subscription) -> None:
        if handle.resource is None:
            return
        conn, on_notify, on_terminate = handle.resource
        handle.resource = None
        conn.remove_termination_listener(on_terminate)
        if conn.is_closed():
            return
        try:
            await conn.remove_listener(handle.channel, on_notify)  # UNLISTEN
        finally:
            await conn.close()


class SharedPostgresChannel(NotificationChannel):
    """One process-wide LISTEN connection fanned out to per-subscription queues.

    Learn: If the listener connection drops, every live subscription is
    marked broken. Their sessions emit `error` and close, clients reconnect,
    and the first new subscribe() reconnects the listener. We never
    reconnect underneath a live subscription: notifications fired while
    the connection was down are gone, and only a client refetch can
    recover them.
    """

    name = "postgres-shared"

    def __init__(self, dsn: str, max_pending: int = 1000, connect_timeout: float = 5.0):
        super().__init__(max_pending=max_pending)
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self._conn: Optional[asyncpg.Connection] = None
        self._lock = asyncio.Lock()
        # channel name → subscriptions in subscribe order
        self._listeners: dict[str, dict[int, Subscription]] = {}

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def start(self) -> None:
        """Connect eagerly so the first viewer doesn't pay for it.

        Failure here is not fatal: subscribe() retries the connect and
        reports ChannelUnavailable to that session if it still fails.
        """
        try:
            async with self._lock:
                await self._connection()
            logger.info("channel.listener_connected", backend=self.name)
        except ChannelUnavailable as e:
            logger.warning("channel.listener_unavailable", backend=self.name, error=str(e))

    async def close(self) -> None:
        await super().close()
        async with self._lock:
            conn, self._conn = self._conn, None
            self._listeners.clear()
            if conn is not None and not conn.is_closed():
                await conn.close()

    async def _connection(self) -> asyncpg.Connection:
        if self.connected:
            return self._conn
        conn = await _connect(self.dsn, self.connect_timeout)
        conn.add_termination_listener(self._on_terminate)
        self._conn = conn
        self._listeners.clear()
        return conn

    def _on_terminate(self, conn) -> None:
        if conn is not self._conn:
            return  # an old connection, or one we closed ourselves
        self._conn = None
        for subs in self._listeners.values():
            for handle in subs.values():
                handle.mark_broken("notification connection lost")
        self._listeners.clear()

    def _on_notify(self, conn, pid, channel, payload) -> None:
        for handle in list(self._listeners.get(channel, {}).values()):
            handle.deliver(payload)

    async def _open(self, handle: Subscription) -> None:
        async with self._lock:
            conn = await self._connection()
            if handle.channel not in self._listeners:
                try:
                    await conn.add_listener(handle.channel, self._on_notify)
                except _CONNECT_ERRORS as e:
                    raise ChannelUnavailable(f"LISTEN {handle.channel} failed: {e}") from e
                self._listeners[handle.channel] = {}
            self._listeners[handle.channel][handle.id] = handle

    async def _close(self, handle: Subscription) -> None:
        async with self._lock:
            subs = self._listeners.get(handle.channel)
            if subs is None:
                return  # listener already torn down (connection lost)
            subs.pop(handle.id, None)
            if subs:
                return
            del self._listeners[handle.channel]
            if self.connected:
                await self._conn.remove_listener(handle.channel, self._on_notify)
