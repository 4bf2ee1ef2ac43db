"""
Database engine and session factory.

Sessions never expire objects on commit so ledger rows stay readable after
the critical section has been committed.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flowcredits.config import settings


engine = create_async_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """FastAPI dependency yielding one session per request."""
    async with AsyncSessionLocal() as session:
        yield session
