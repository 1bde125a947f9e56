"""JWT token creation and verification.

Learn: JWT (JSON Web Token) provides stateless authentication. Whatever
sign-in flow sits in front of this service mints an access token whose
`sub` is the chat user's id; every API call and event stream presents it.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from chatstream.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    user_id: int,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": "access",
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if payload.get("type") != "access":
        raise TokenError("Not an access token")
    try:
        int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise TokenError("Token subject is not a user id")
    return payload
