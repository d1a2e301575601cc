"""
Pytest configuration and fixtures
"""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["ENABLE_INTELLIGENCE"] = "true"
os.environ["INTEL_DRY_RUN"] = "false"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"

import asyncio
import pytest
import pytest_asyncio
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool
from models import Base, FacebookAuth

# In-memory database shared by every session of one test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory for code that opens its own sessions (jobs, backfills)"""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def file_session_factory(tmp_path):
    """
    File backed database for API tests.

    TestClient runs the app on its own event loop, so every session opens
    a fresh connection instead of sharing one across loops.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_tables())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def run_db(file_session_factory):
    """Run ``await func(session)`` against the API test database from a synchronous test."""
    def runner(func):
        async def run():
            async with file_session_factory() as session:
                return await func(session)

        return asyncio.run(run())

    return runner


@pytest.fixture
def add_auth():
    """Store a connected Facebook login for a user"""
    async def add(session: AsyncSession, user_id: int = 1, ad_account_id: str = "act_123",
                  token: str = "user-token-abcdef123456") -> FacebookAuth:
        auth = FacebookAuth(user_id=user_id, selected_ad_account_id=ad_account_id, is_active=True)
        auth.access_token = token
        session.add(auth)
        await session.commit()
        return auth

    return add


@pytest.fixture
def usage_headers():
    """Graph API usage headers at 50 of 200 calls"""
    return {
        "x-business-use-case-usage": '{"123": [{"type": "ads_management", "call_count": 50, '
                                     '"total_cputime": 10, "total_time": 10, '
                                     '"estimated_time_to_regain_access": 0}]}',
    }
