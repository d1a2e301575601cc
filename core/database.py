"""
Database session management with SQLAlchemy async
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development",
    poolclass=NullPool,
    future=True
)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


@asynccontextmanager
async def session_scope(session_factory=None) -> AsyncIterator[AsyncSession]:
    """
    Session for background jobs (queue processor, backfills, schedulers).

    Rolls back and re-raises on error so the caller can record the failure.
    """
    factory = session_factory or async_session_maker
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
