"""Pydantic schemas for messages and users.

Learn: MessageRead mirrors the `message` event payload exactly, so the
history endpoint, the create response and the live stream all hand the
client the same shape (content already HTML-escaped).
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from chatstream.config import settings


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=settings.max_message_length)

    @field_validator("content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class MessageRead(BaseModel):
    id: int
    user_id: int
    username: str
    avatar_url: Optional[str] = None
    content: str  # HTML-escaped
    created_at: str  # ISO-8601


class MessageList(BaseModel):
    messages: list[MessageRead]


class MessageCreated(BaseModel):
    message: MessageRead


class UserRead(BaseModel):
    id: int
    username: str
    avatar_url: Optional[str] = None

    model_config = {"from_attributes": True}
