"""Pick the notification channel backend from settings."""

from chatstream.config import Settings
from chatstream.realtime.channel import NotificationChannel
from chatstream.realtime.memory import InMemoryNotificationChannel
from chatstream.realtime.postgres import DedicatedPostgresChannel, SharedPostgresChannel
from chatstream.realtime.redis_channel import RedisNotificationChannel


def build_notification_channel(settings: Settings) -> NotificationChannel:
    max_pending = settings.max_pending_notifications

    if settings.notify_backend == "memory":
        return InMemoryNotificationChannel(max_pending=max_pending)
    if settings.notify_backend == "redis":
        return RedisNotificationChannel(settings.redis_url)
    if settings.notify_shared_listener:
        return SharedPostgresChannel(settings.listen_dsn, max_pending=max_pending)
    return DedicatedPostgresChannel(settings.listen_dsn, max_pending=max_pending)
