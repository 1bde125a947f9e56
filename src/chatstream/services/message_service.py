"""Message store — create, look up and list chat messages.

Learn: The store is deliberately dumb. It does not publish anything:
on PostgreSQL the `message_insert_notify` trigger publishes inside the
same commit as the INSERT, so "committed" and "announced" cannot drift
apart. The route calls channel.publish_committed() afterwards, which is a
no-op for storage-backed channels.

Content is stored raw and escaped by to_payload() on every way out.
"""

import asyncio
import html
from datetime import timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from chatstream.db.models import Message, User


class LookupFailure(Exception):
    """Transient storage error while resolving a notified message id."""


class UserNotFoundError(Exception):
    pass


def escape_content(content: str) -> str:
    """HTML-escape message content (&, <, >, and both quote characters)."""
    return html.escape(content, quote=True)


def to_payload(message: Message) -> dict[str, Any]:
    """Serialize a message (with its user loaded) for clients."""
    created_at = message.created_at
    if created_at is not None and created_at.tzinfo is None:
        # SQLite hands back naive timestamps; the server default is UTC.
        created_at = created_at.replace(tzinfo=timezone.utc)
    return {
        "id": message.id,
        "user_id": message.user_id,
        "username": message.user.username,
        "avatar_url": message.user.avatar_url,
        "content": escape_content(message.content),
        "created_at": created_at.isoformat() if created_at else None,
    }


class MessageStore:
    """Persistence for chat messages."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, user_id: int, content: str) -> Message:
        """Insert a message and commit. The commit fires the NOTIFY trigger."""
        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        msg = Message(user_id=user_id, content=content)
        self.db.add(msg)
        await self.db.commit()
        # created_at comes from the server default
        await self.db.refresh(msg, attribute_names=["created_at", "user"])
        return msg

    async def find(self, message_id: int) -> Optional[Message]:
        result = await self.db.execute(
            select(Message)
            .options(selectinload(Message.user))
            .where(Message.id == message_id)
        )
        return result.scalars().first()

    async def list_ordered_by_creation(self, limit: Optional[int] = None) -> list[Message]:
        """Chat history, oldest first. `limit` keeps the most recent N."""
        query = select(Message).options(selectinload(Message.user))
        if limit is None:
            result = await self.db.execute(
                query.order_by(Message.created_at.asc(), Message.id.asc())
            )
            return list(result.scalars().all())

        result = await self.db.execute(
            query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
        )
        return list(reversed(result.scalars().all()))


MessageResolver = Callable[[int], Awaitable[Optional[dict[str, Any]]]]


def message_resolver(
    session_factory: async_sessionmaker, timeout: float = 5.0
) -> MessageResolver:
    """Build the lookup function streaming sessions use.

    Each lookup borrows a pooled session for one query and is bounded by
    `timeout`, so a slow database can't stall a stream indefinitely.
    Connection-level errors and timeouts become LookupFailure (the session
    skips the event); anything else propagates.
    """

    async def resolve(message_id: int) -> Optional[dict[str, Any]]:
        async def lookup():
            async with session_factory() as db:
                message = await MessageStore(db).find(message_id)
                return to_payload(message) if message else None

        try:
            return await asyncio.wait_for(lookup(), timeout)
        except asyncio.TimeoutError as e:
            raise LookupFailure(f"lookup of message {message_id} timed out") from e
        except (OperationalError, InterfaceError) as e:
            raise LookupFailure(f"lookup of message {message_id} failed: {e}") from e

    return resolve
