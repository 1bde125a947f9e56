"""Notification relay — bridges PostgreSQL NOTIFY to Redis pub/sub.

Learn: The relay is a separate process that:
1. Listens for new_message notifications via PostgreSQL LISTEN/NOTIFY
2. Republishes each one, in order, on Redis (chatstream:new_message)

Web nodes running with the redis notify backend subscribe there, so a
message posted through any node reaches streams on every node.
"""
