"""Request ID middleware — unique ID per request for log correlation.

Every request gets an ID, either from the incoming X-Request-ID header or
generated. It is bound to structlog's contextvars, so every log line a
streaming session writes (subscribe, lookups, close) carries the ID of
the request that opened the stream.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(HEADER) or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
        )

        response: Response = await call_next(request)
        response.headers[HEADER] = request_id
        return response
