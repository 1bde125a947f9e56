"""Notification relay tests — ordering, overflow, publish retries, resets.

Learn: asyncpg's callbacks are plain functions, so the relay is driven
by calling _on_notify() directly with a fake Redis client. No PostgreSQL
or Redis server is needed.
"""

import asyncio
import json

import asyncpg
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatstream.config import Settings
from chatstream.realtime.pubsub import parse_reset_marker
from chatstream.relay.main import relay_config
from chatstream.relay.relay import NotifyRelay, RelayConfig

FAST_RETRY = dict(publish_retry_delay=0.01, max_publish_retry_delay=0.02)


class FakeRedis:
    """Records publishes. Payloads in fail_once fail their first attempt."""

    def __init__(self, fail_once=()):
        self.published = []
        self.fail_once = set(fail_once)
        self.attempts = 0
        self.closed = False

    async def publish(self, channel, payload):
        self.attempts += 1
        if payload in self.fail_once:
            self.fail_once.discard(payload)
            raise RedisConnectionError("redis went away")
        self.published.append((channel, payload))
        return 1

    async def aclose(self):
        self.closed = True

    def payloads(self):
        return [p for _, p in self.published]


async def run_publisher(relay):
    task = asyncio.create_task(relay._publish_loop())
    await asyncio.wait_for(relay._queue.join(), 1.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def notify(relay, *ids):
    for i in ids:
        relay._on_notify(None, 123, "new_message", f'{{"id": {i}}}')


@pytest.mark.asyncio
async def test_relays_in_notify_order():
    redis = FakeRedis()
    relay = NotifyRelay(RelayConfig(), redis=redis)

    notify(relay, 1, 2, 3, 4, 5)
    await run_publisher(relay)

    assert redis.published == [
        ("chatstream:new_message", f'{{"id": {i}}}') for i in range(1, 6)
    ]
    assert relay.get_stats()["relayed"] == 5
    assert relay.get_stats()["resets"] == 0
    assert relay.get_stats()["pending"] == 0


@pytest.mark.asyncio
async def test_failed_publish_is_retried_then_followed_by_reset():
    redis = FakeRedis(fail_once={'{"id": 2}'})
    relay = NotifyRelay(RelayConfig(**FAST_RETRY), redis=redis)

    notify(relay, 1, 2, 3)
    await run_publisher(relay)

    payloads = redis.payloads()
    assert payloads[:2] == ['{"id": 1}', '{"id": 2}']
    assert parse_reset_marker(payloads[2]) == "redis publish failed"
    assert payloads[3:] == ['{"id": 3}']
    assert relay.stats.relayed == 3
    assert relay.stats.errors == 1
    assert relay.stats.resets == 1


@pytest.mark.asyncio
async def test_publish_backoff_doubles_up_to_max(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    class DownRedis(FakeRedis):
        async def publish(self, channel, payload):
            self.attempts += 1
            if self.attempts <= 4:
                raise RedisConnectionError("redis went away")
            return await super().publish(channel, payload)

    redis = DownRedis()
    relay = NotifyRelay(
        RelayConfig(publish_retry_delay=1.0, max_publish_retry_delay=3.0), redis=redis
    )
    monkeypatch.setattr(asyncio, "sleep", fake_sleep)

    assert await relay._publish("chatstream:new_message", '{"id": 1}') is True
    assert sleeps == [1.0, 2.0, 3.0, 3.0]
    assert redis.payloads() == ['{"id": 1}']


@pytest.mark.asyncio
async def test_full_queue_drops_counts_and_requests_reset():
    redis = FakeRedis()
    relay = NotifyRelay(RelayConfig(max_pending=2), redis=redis)

    notify(relay, 1, 2, 3)

    stats = relay.get_stats()
    assert stats["dropped"] == 1
    assert stats["pending"] == 2

    await run_publisher(relay)
    payloads = redis.payloads()
    # the gap is announced before anything else goes out
    assert parse_reset_marker(payloads[0]) == "relay queue overflow"
    assert payloads[1:] == ['{"id": 1}', '{"id": 2}']
    assert relay.stats.resets == 1


@pytest.mark.asyncio
async def test_reset_request_wakes_idle_publisher():
    redis = FakeRedis()
    relay = NotifyRelay(
        RelayConfig(channels=["new_message", "presence"]), redis=redis
    )

    relay._request_reset("relay LISTEN connection (re)established")
    await run_publisher(relay)

    assert [c for c, _ in redis.published] == [
        "chatstream:new_message",
        "chatstream:presence",
    ]
    for _, payload in redis.published:
        assert json.loads(payload) == {"reset": "relay LISTEN connection (re)established"}
    assert relay.stats.resets == 1
    assert relay.stats.relayed == 0


@pytest.mark.asyncio
async def test_termination_of_stale_connection_is_ignored():
    relay = NotifyRelay(RelayConfig(), redis=FakeRedis())
    current, stale = object(), object()
    relay._conn = current

    relay._on_terminate(stale)
    assert not relay._lost.is_set()

    relay._on_terminate(current)
    assert relay._lost.is_set()


@pytest.mark.asyncio
async def test_start_publishes_reset_and_stop_closes_redis():
    redis = FakeRedis()
    relay = NotifyRelay(RelayConfig(), redis=redis)

    async def connect():
        relay._lost.clear()

    relay._connect = connect
    runner = asyncio.create_task(relay.start())
    await asyncio.sleep(0.05)
    assert relay.get_stats()["started_at"] is not None
    # subscribers can't know what happened before the relay was listening
    assert [parse_reset_marker(p) for p in redis.payloads()] == [
        "relay LISTEN connection (re)established"
    ]

    await relay.stop()
    await asyncio.wait_for(runner, 1.0)
    assert redis.closed
    assert relay.stats.reconnects == 0


# ═══════════════════════════════════════════════════════════
# LISTEN connection setup
# ═══════════════════════════════════════════════════════════


class FakeConnection:
    def __init__(self, listen=None):
        self.listen = listen
        self.listeners = {}
        self.termination_listeners = []
        self.terminated = False

    def is_closed(self):
        return self.terminated

    def add_termination_listener(self, callback):
        self.termination_listeners.append(callback)

    async def add_listener(self, channel, callback):
        if self.listen is not None:
            await self.listen()
        self.listeners[channel] = callback

    def terminate(self):
        self.terminated = True


@pytest.fixture()
def fake_connect(monkeypatch):
    """Replace asyncpg.connect; `listen` is awaited inside add_listener."""
    opened = []
    state = {"listen": None}

    async def connect(dsn, timeout=None):
        conn = FakeConnection(state["listen"])
        opened.append(conn)
        return conn

    monkeypatch.setattr(asyncpg, "connect", connect)
    return opened, state


@pytest.mark.asyncio
async def test_connect_listens_on_every_channel(fake_connect):
    opened, _ = fake_connect
    relay = NotifyRelay(RelayConfig(channels=["new_message", "presence"]), redis=FakeRedis())

    await relay._connect()

    assert relay._conn is opened[0]
    assert set(opened[0].listeners) == {"new_message", "presence"}
    assert opened[0].termination_listeners == [relay._on_terminate]


@pytest.mark.asyncio
async def test_connect_failing_mid_listen_terminates_connection(fake_connect):
    opened, state = fake_connect

    async def fail():
        raise asyncpg.InterfaceError("connection is closed")

    state["listen"] = fail
    relay = NotifyRelay(RelayConfig(), redis=FakeRedis())

    with pytest.raises(asyncpg.InterfaceError):
        await relay._connect()
    assert opened[0].terminated
    assert relay._conn is None


@pytest.mark.asyncio
async def test_connect_cancelled_mid_listen_terminates_connection(fake_connect):
    opened, state = fake_connect
    state["listen"] = lambda: asyncio.sleep(10)
    relay = NotifyRelay(RelayConfig(), redis=FakeRedis())

    task = asyncio.create_task(relay._connect())
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert opened[0].terminated
    assert relay._conn is None


# ═══════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════


def test_relay_config_from_settings():
    s = Settings(
        database_url="postgresql+asyncpg://u:secret@db:5432/chat",
        redis_url="redis://cache:6379/1",
        notify_channel="chat_events",
        relay_max_pending=50,
        relay_reconnect_delay=1.5,
        relay_publish_retry_delay=0.2,
        relay_max_publish_retry_delay=4.0,
    )
    config = relay_config(s)

    assert config.database_url == "postgresql://u:secret@db:5432/chat"
    assert config.redis_url == "redis://cache:6379/1"
    assert config.channels == ["chat_events"]
    assert config.max_pending == 50
    assert config.reconnect_delay == 1.5
    assert config.publish_retry_delay == 0.2
    assert config.max_publish_retry_delay == 4.0
