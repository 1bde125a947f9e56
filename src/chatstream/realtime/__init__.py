"""Real-time delivery — change notification channels + streaming sessions.

Learn: Events flow through three stages:
1. Message INSERT commits → trigger runs pg_notify('new_message', ...)
2. A NotificationChannel subscription receives the payload
3. The StreamingSession resolves the id and emits an SSE `message` event

Sessions never talk to each other; the channel is the only fan-out point.
"""
