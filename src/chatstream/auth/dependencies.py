"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current user from the request.

Two places a token can come from:
1. Authorization: Bearer <jwt> header (API calls)
2. ?token=<jwt> query param — browsers' EventSource cannot set headers,
   so the event stream accepts the token in the URL
"""

from typing import Optional

from fastapi import Depends, HTTPException, Header, Query

from chatstream.auth.jwt import TokenError, verify_token


class CurrentIdentity:
    """The authenticated user making the request."""

    def __init__(self, user_id: int):
        self.user_id = user_id


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None, include_in_schema=False),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no auth)."""
    if authorization and authorization.startswith("Bearer "):
        return _authenticate_jwt(authorization[7:])
    if token:
        return _authenticate_jwt(token)
    return None


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not is_authenticated(identity):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def is_authenticated(identity: Optional[CurrentIdentity]) -> bool:
    return identity is not None


def _authenticate_jwt(token: str) -> CurrentIdentity:
    try:
        payload = verify_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentIdentity(user_id=int(payload["sub"]))
