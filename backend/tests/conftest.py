"""
Shared fixtures for the experimentation service test suite.

Every test runs against a fresh in-memory SQLite database, so no
PostgreSQL server is needed.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("AB_SWEEP_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models.database.ab_tests import ABTestVariant
from app.services.ab_testing.ab_test_manager import ABTestManager


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
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


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# A/B test fixtures
# ---------------------------------------------------------------------------

HERO_ARMS = [
    {"arm_id": "A", "name": "Current hero", "content": {"headline": "Find your next car"}},
    {"arm_id": "B", "name": "Financing hero", "content": {"headline": "0% financing this month"}},
]


@pytest.fixture
def hero_arms():
    """Two arms for the homepage hero banner test."""
    return [dict(arm) for arm in HERO_ARMS]


@pytest_asyncio.fixture
async def draft_test(db, hero_arms):
    return await ABTestManager.create_test(db, name="Homepage hero", arms=hero_arms)


@pytest_asyncio.fixture
async def running_test(db, draft_test):
    return await ABTestManager.start_test(db, draft_test.id)


@pytest.fixture
def seed_counts(db):
    """Overwrite an arm's counters, as if the traffic had already happened."""

    async def _seed(test_id: int, arm_id: str, impressions: int, conversions: int):
        await db.execute(
            update(ABTestVariant)
            .where(ABTestVariant.test_id == test_id, ABTestVariant.arm_id == arm_id)
            .values(
                impressions=impressions,
                conversions=conversions,
                conversion_rate=conversions / impressions if impressions else 0.0,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    return _seed


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client bound to the app, with the test database injected."""
    from httpx import ASGITransport, AsyncClient

    from app.core.database import get_db
    from app.main import create_app

    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
