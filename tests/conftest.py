from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from memecraft.config import settings
from memecraft.database import get_db
from memecraft.main import app
from memecraft.models import Base
from memecraft.payments.factory import PaymentProviderFactory
from memecraft.payments.mock_gateway import MockGateway

TEST_JWT_SECRET = "test-secret-key"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so several sessions can run against one database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_gateway():
    return MockGateway(webhook_secret="mock-secret-key")


@pytest.fixture
def payment_factory(mock_gateway):
    return PaymentProviderFactory([mock_gateway], default="mock")


def make_token(user_id: str) -> str:
    return jwt.encode({"sub": user_id}, TEST_JWT_SECRET, algorithm="HS256")


@pytest.fixture
def auth_headers():
    """Build an Authorization header for *user_id*."""

    def _headers(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _headers


@pytest.fixture
async def client(session_factory, payment_factory, monkeypatch):
    """API client bound to the test database and the mock provider."""
    monkeypatch.setattr(settings, "JWT_SECRET_KEY", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "JWT_ALGORITHM", "HS256")

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.state.payment_factory = payment_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.payment_factory
