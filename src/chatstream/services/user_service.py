"""User lookups and upserts.

Identity federation (OAuth) lives outside this service; whatever signs a
user in ends up calling upsert() with the profile it got.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatstream.db.models import User


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def upsert(
        self,
        username: str,
        avatar_url: Optional[str] = None,
        email: Optional[str] = None,
        github_id: Optional[str] = None,
    ) -> User:
        """Find a user by github_id (or username) and refresh the profile."""
        query = select(User)
        if github_id:
            query = query.where(User.github_id == github_id)
        else:
            query = query.where(User.username == username)
        user = (await self.db.execute(query)).scalars().first()

        if user is None:
            user = User(username=username, github_id=github_id)
            self.db.add(user)
        user.username = username
        if avatar_url is not None:
            user.avatar_url = avatar_url
        if email is not None:
            user.email = email

        await self.db.commit()
        await self.db.refresh(user)
        return user
