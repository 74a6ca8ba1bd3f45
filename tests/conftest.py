"""Shared pytest fixtures for API, datastore and cache tests.

Each test gets its own SQLite file through aiosqlite so that separate sessions
contend on real row locks and constraints.
"""

import os
import tempfile
from typing import AsyncGenerator

os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'shortlinks-app.db')}"
)
os.environ.setdefault("FETCH_PAGE_TITLE", "false")
os.environ.setdefault("BASE_URL", "http://sho.rt")
os.environ.setdefault("FRONTEND_URL", "http://app.sho.rt")

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings
from app.database import Base, get_db
from app.dependencies import ServiceManager, _service_manager
from app.enums import Role, SubscriptionStatus, Tier
from app.main import app
from app.models import User
from app.plans import PlanCatalog, seed_plans
from app.shortcode import ShortCodeGenerator
from app.subscriptions import SubscriptionDirectory
from app.usage import UsageMeter

settings = get_settings()

FREE_USER = "user-free"
PRO_USER = "user-pro"
PREMIUM_USER = "user-premium"
LAPSED_USER = "user-lapsed"
ADMIN_USER = "user-admin"


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shortlinks.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await seed_plans(session)
        session.add_all(
            [
                User(id=FREE_USER, email="free@example.com", tier=Tier.FREE.value),
                User(id=PRO_USER, email="pro@example.com", tier=Tier.PRO.value),
                User(id=PREMIUM_USER, email="premium@example.com", tier=Tier.PREMIUM.value),
                User(
                    id=LAPSED_USER,
                    email="lapsed@example.com",
                    tier=Tier.PRO.value,
                    subscription_status=SubscriptionStatus.PAST_DUE.value,
                ),
                User(id=ADMIN_USER, email="admin@example.com", tier=Tier.PREMIUM.value, role=Role.ADMIN.value),
            ]
        )
        await session.commit()
    return factory


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def plans(session_factory: async_sessionmaker) -> PlanCatalog:
    return PlanCatalog(session_factory, refresh_seconds=300)


@pytest.fixture
def generator() -> ShortCodeGenerator:
    return ShortCodeGenerator.from_settings(settings)


@pytest.fixture
def cache() -> AsyncMock:
    mock = AsyncMock(spec=redis.Redis)
    mock.get = AsyncMock(return_value=None)
    mock.setex = AsyncMock()
    mock.delete = AsyncMock()
    mock.ping = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def meter(db_session: AsyncSession, plans: PlanCatalog) -> UsageMeter:
    return UsageMeter(db_session, plans, SubscriptionDirectory(db_session))


@pytest_asyncio.fixture(scope="function")
async def manager(session_factory: async_sessionmaker, cache: AsyncMock) -> AsyncGenerator[ServiceManager, None]:
    _service_manager._initialized = False
    await _service_manager.initialize(session_factory=session_factory, cache=cache)
    yield _service_manager
    _service_manager._initialized = False


@pytest_asyncio.fixture(scope="function")
async def client(session_factory: async_sessionmaker, manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-ID": user_id}
