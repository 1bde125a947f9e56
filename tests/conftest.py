"""Test fixtures — throwaway SQLite database + in-memory notification channel.

Learn: The delivery pipeline is tested without PostgreSQL:

1. Each test gets its own SQLite file (aiosqlite) with the ORM schema.
   A file rather than :memory: so every AsyncSession gets its own
   connection, exactly like the pooled PostgreSQL setup.
2. InMemoryNotificationChannel stands in for LISTEN/NOTIFY. It has the
   same subscribe/poll/unsubscribe contract; publish_committed() plays
   the part of the insert trigger.
3. The HTTP client uses real JWTs (minted for a seeded user) so the auth
   dependencies run for real.

Tests that need a live PostgreSQL read CHATSTREAM_TEST_POSTGRES_URL and
skip without it.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chatstream.auth.jwt import create_access_token
from chatstream.db.engine import get_db
from chatstream.db.models import Base, User
from chatstream.main import app
from chatstream.realtime.memory import InMemoryNotificationChannel


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """Fresh schema per test; yields an async_sessionmaker."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def user(session_factory):
    """User #7, the author in most scenarios."""
    async with session_factory() as session:
        u = User(id=7, username="octocat", avatar_url="https://avatars.example/7.png")
        session.add(u)
        await session.commit()
        return u


@pytest.fixture()
def channel():
    return InMemoryNotificationChannel()


@pytest.fixture()
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest_asyncio.fixture()
async def client(session_factory, channel):
    """HTTP client with the app's get_db and notification channel swapped for test ones.

    Learn: httpx's ASGITransport doesn't run the lifespan, so the channel
    the lifespan would normally create is set on app.state here.
    """
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.notification_channel = channel

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.notification_channel = None
