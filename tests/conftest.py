import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import moodchat.models  # noqa: F401
from moodchat.database import Base, get_db, get_session_maker
from moodchat.main import app
from moodchat.services.crypto_service import RoomKeyRing
from moodchat.services.realtime import ChangeFeed, get_change_feed
from moodchat.services.store import StoreGateway

StoreFactory = Callable[..., Awaitable[StoreGateway]]


def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'moodchat_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    # NullPool: no connection outlives the event loop that opened it
    engine = create_async_engine(database_url(tmp_path), poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def service_store(session_maker, feed) -> StoreGateway:
    """Unbound gateway, bypasses the room policy."""
    return StoreGateway(session_maker, feed)


@pytest.fixture
def make_store(session_maker, feed) -> StoreFactory:
    async def _make(signed_in: bool = True, feed_override: ChangeFeed | None = None) -> StoreGateway:
        store = StoreGateway(session_maker, feed_override or feed)
        if signed_in:
            await store.sign_in_anonymously()
        return store

    return _make


@pytest.fixture
def keyring() -> RoomKeyRing:
    return RoomKeyRing()


@pytest_asyncio.fixture(scope="function")
async def client(session_maker, feed) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_change_feed] = lambda: feed

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
