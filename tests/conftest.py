import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from inbox.config import settings
from inbox.database import Base, get_db
from inbox.models import Food, Restaurant, User
from inbox.publisher import FanoutPublisher, publisher


class RecordingBroker:
    def __init__(self):
        self.published = []
        self.fail = False

    async def publish(self, channel, payload):
        if self.fail:
            raise ConnectionError("broker down")
        self.published.append((channel, payload))

    async def close(self):
        return

    def on(self, channel):
        return [payload for ch, payload in self.published if ch == channel]

    def types(self, channel):
        return [payload["type"] for payload in self.on(channel)]


class FakeWebSocket:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def users(session_factory):
    async with session_factory() as session:
        rows = [
            User(id=1, username="alice"),
            User(id=2, username="bob"),
            User(id=3, username="carol"),
            User(id=4, username="mod", is_moderator=True),
        ]
        session.add_all(rows)
        session.add(Restaurant(id=10, name="Momo House"))
        session.add(Food(id=20, restaurant_id=10, name="Jhol Momo"))
        await session.commit()
    return {u.username: u.id for u in rows}


@pytest.fixture
def broker(monkeypatch):
    broker = RecordingBroker()
    monkeypatch.setattr(publisher, "broker", broker)
    # Fresh locks so none stay bound to an earlier test's event loop
    monkeypatch.setattr(publisher, "_locks", [asyncio.Lock() for _ in range(FanoutPublisher.LOCK_STRIPES)])
    return broker


def make_token(user_id, **claims):
    payload = {"sub": str(user_id), **claims}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def auth_headers(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest_asyncio.fixture
async def client(session_factory, users, broker):
    from inbox.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
