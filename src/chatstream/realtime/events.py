"""Event stream event names and payload builders.

Learn: Every event on the wire is a named SSE event with a one-line JSON
body:

    event: message
    data: {"id": 12, "user_id": 7, ...}

Clients register one listener per name (EventSource.addEventListener),
so the names below are part of the public contract.
"""

import json
from typing import Any

from sse_starlette.sse import ServerSentEvent

CONNECTED = "connected"
MESSAGE = "message"
KEEPALIVE = "keepalive"
ERROR = "error"

# Plain "\n" framing, not sse-starlette's "\r\n" default.
SEPARATOR = "\n"


def sse_event(name: str, data: dict[str, Any]) -> ServerSentEvent:
    return ServerSentEvent(
        data=json.dumps(data, default=str),
        event=name,
        sep=SEPARATOR,
    )


def connected_event() -> ServerSentEvent:
    return sse_event(CONNECTED, {"status": "connected"})


def message_event(payload: dict[str, Any]) -> ServerSentEvent:
    """`payload` is MessageStore.to_payload() output (content already escaped)."""
    return sse_event(MESSAGE, payload)


def keepalive_event(timestamp: float) -> ServerSentEvent:
    return sse_event(KEEPALIVE, {"timestamp": int(timestamp)})


def error_event(message: str) -> ServerSentEvent:
    return sse_event(ERROR, {"message": message})
