"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is enforced per route with Depends(get_current_user) rather
than at include_router level, because the routes need the identity
itself (who is posting, who is streaming). Health and dev-login are open.
"""

from fastapi import APIRouter

from chatstream.api.auth import router as auth_router
from chatstream.api.events import router as events_router
from chatstream.api.health import router as health_router
from chatstream.api.messages import router as messages_router

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])

# Protected routes — require a valid JWT
api_router.include_router(messages_router, tags=["messages"])
api_router.include_router(events_router, tags=["events"])
