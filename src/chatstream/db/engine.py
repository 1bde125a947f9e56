"""Async SQLAlchemy engine and session factory.

Learn: Two kinds of database traffic share this pool:
1. Request handlers (history, posting) get a session per request via get_db()
2. Every open event stream borrows a session for each message lookup
   (services.message_service.message_resolver) and returns it right away

Streams are long-lived but never hold a pooled connection between
lookups, so the pool size is driven by lookup concurrency, not by how
many viewers are connected.

The LISTEN connections used by the notification channel are NOT pooled:
a LISTEN registration is connection-scoped, so realtime.postgres opens
those with asyncpg directly.
"""

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chatstream.config import settings

# pre_ping: a lookup after a database restart should fail over to a fresh
# connection rather than surface as a LookupFailure.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=15,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request, closed afterwards."""
    async with async_session_factory() as session:
        yield session
