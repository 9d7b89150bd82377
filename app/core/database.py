import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from app.core.config import settings
from app.scheduling.exceptions import SchedulerUnavailableError

logger = structlog.get_logger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,  # Disabled to prevent SQLAlchemy engine logs
    future=True,
    pool_pre_ping=True,
    pool_recycle=300,
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base()


async def init_db():
    """Initialize database connection and import models."""
    try:
        # Test database connection
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

        logger.info("Database connection initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", exc_info=e)
        raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error("Database session error", exc_info=e)
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """Dependency returning the session factory.

    Reservations open one session per attempt so that the free-check and the
    insert share a single transaction, independent of the request session.
    """
    return AsyncSessionLocal


@asynccontextmanager
async def storage_errors(operation: str):
    """Translate connectivity failures of the database into SchedulerUnavailableError.

    Integrity violations are left to the caller, they carry booking semantics.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.error("Storage unavailable", operation=operation, exc_info=e)
        raise SchedulerUnavailableError(
            f"Storage unavailable during {operation}"
        ) from e
