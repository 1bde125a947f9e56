"""Message API routes — chat history and posting.

Learn: These routes are the write side of the pipeline. A POST commits the
row; on PostgreSQL the insert trigger announces it to every open stream
as part of that commit. Routes just translate HTTP to store calls.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from chatstream.api.events import get_notification_channel
from chatstream.auth.dependencies import CurrentIdentity, get_current_user
from chatstream.config import settings
from chatstream.db.engine import get_db
from chatstream.realtime.channel import NotificationChannel
from chatstream.schemas.message import MessageCreate, MessageCreated, MessageList
from chatstream.services.message_service import (
    MessageStore,
    UserNotFoundError,
    to_payload,
)

router = APIRouter()


def _store(db: AsyncSession = Depends(get_db)) -> MessageStore:
    return MessageStore(db)


@router.get("/messages", response_model=MessageList)
async def list_messages(
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Most recent N only"),
    store: MessageStore = Depends(_store),
):
    """Chat history, oldest first, content HTML-escaped."""
    messages = await store.list_ordered_by_creation(limit=limit)
    return {"messages": [to_payload(m) for m in messages]}


@router.post("/messages", response_model=MessageCreated, status_code=201)
async def create_message(
    body: MessageCreate,
    identity: CurrentIdentity = Depends(get_current_user),
    store: MessageStore = Depends(_store),
    channel: NotificationChannel = Depends(get_notification_channel),
):
    """Post a message as the current user."""
    try:
        msg = await store.create(user_id=identity.user_id, content=body.content)
    except UserNotFoundError:
        raise HTTPException(status_code=401, detail="Unknown user")

    payload = to_payload(msg)
    await channel.publish_committed(
        settings.notify_channel,
        {
            "id": msg.id,
            "user_id": msg.user_id,
            "content": msg.content,
            "created_at": payload["created_at"],
        },
    )
    return {"message": payload}
