"""
Database engine and unit-of-work sessions

A session is one unit of work: it commits when the block finishes and rolls
back when anything inside raises. Repositories only flush.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from dentashop.core.config import settings


def engine_options(database_url: str, environment: str) -> dict:
    """Pool arguments for create_async_engine."""
    if database_url.startswith("sqlite"):
        # aiosqlite uses a static pool; QueuePool sizing does not apply
        return {}
    if environment == "production":
        return {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return {"pool_size": 2, "max_overflow": 5, "pool_pre_ping": True}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **engine_options(settings.DATABASE_URL, settings.ENVIRONMENT),
)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


@asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Session scope for work outside a request, e.g. recording a redemption
    from the order worker. Commits on success, rolls back on any error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: the request is the unit of work."""
    async with get_db_session() as session:
        yield session
