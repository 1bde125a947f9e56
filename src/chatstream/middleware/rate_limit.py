"""Rate limiting middleware — Redis-based fixed window per minute.

Learn: Each IP gets a counter key like "chatstream:rl:{ip}:{bucket}:{minute}".
Posting messages gets its own (stricter) bucket so a chatty client can't
flood every open stream.

The event stream is exempt: it is one long-lived request, and EventSource
reconnects every few seconds when it drops — limiting those reconnects
would turn a blip into a lockout.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

EXEMPT_PATHS = ("/api/v1/events", "/api/v1/health")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, default_rpm: int = 120, post_rpm: int = 30):
        super().__init__(app)
        self.default_rpm = default_rpm
        self.post_rpm = post_rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path.startswith(EXEMPT_PATHS):
            return await call_next(request)

        # Try to get Redis — skip rate limiting if unavailable
        try:
            from chatstream.realtime.pubsub import get_redis

            redis = get_redis()
        except RuntimeError:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        is_post = request.method == "POST" and path.startswith("/api/v1/messages")
        rpm = self.post_rpm if is_post else self.default_rpm
        bucket = "post" if is_post else "api"
        window = int(time.time() // 60)
        key = f"chatstream:rl:{client_ip}:{bucket}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)
        except Exception:
            # Redis error — don't block the request
            return await call_next(request)

        if count > rpm:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rpm - count))
        return response
