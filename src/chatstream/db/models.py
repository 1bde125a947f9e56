"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Alembic migrations mirror these tables; the NOTIFY trigger on `messages`
lives only in the migration because it is PostgreSQL-specific.

Key concepts:
- Integer autoincrement ids: message ids are monotonic, which is what
  clients use to de-duplicate at-least-once deliveries.
- server_default for created_at so raw SQL inserts (and the trigger payload)
  see the same timestamp the ORM does.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class User(Base):
    """A chat participant.

    Learn: Identity federation (e.g. GitHub OAuth)
    is outside this service. We only keep what the message payload needs:
    a display name and an avatar.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    github_id: Mapped[Optional[str]] = mapped_column(
        String(50), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    messages: Mapped[list["Message"]] = relationship(back_populates="user")


class Message(Base):
    """A chat message. Immutable once created.

    Content is stored raw; it is HTML-escaped on every way out
    (history listing, create response, live stream).
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_created_at", "created_at", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="messages")
