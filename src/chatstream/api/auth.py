"""Auth API — development sign-in and current user.

Learn: Real deployments sign users in elsewhere (e.g. GitHub OAuth,
hence users.github_id) and only hand this service a JWT. For local
development and the CLI, /auth/dev-login upserts a user by username and
returns a token. It answers 404 outside the development environment.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatstream.auth.dependencies import CurrentIdentity, get_current_user
from chatstream.auth.jwt import create_access_token
from chatstream.config import settings
from chatstream.db.engine import get_db
from chatstream.schemas.message import UserRead
from chatstream.services.user_service import UserService

router = APIRouter(prefix="/auth")


class DevLoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    avatar_url: Optional[str] = Field(None, max_length=500)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


@router.post("/dev-login", response_model=TokenResponse)
async def dev_login(body: DevLoginRequest, db: AsyncSession = Depends(get_db)):
    """Upsert a user and issue an access token (development only)."""
    if settings.environment != "development":
        raise HTTPException(status_code=404, detail="Not found")

    user = await UserService(db).upsert(username=body.username, avatar_url=body.avatar_url)
    return TokenResponse(
        access_token=create_access_token(user.id),
        user=UserRead.model_validate(user),
    )


@router.get("/me", response_model=UserRead)
async def me(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await UserService(db).get(identity.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user
