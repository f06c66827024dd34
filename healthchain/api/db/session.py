"""
Database Session Management

Async SQLAlchemy engine and sessions. Services commit their own
transactions; the request dependency only cleans up after them.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from healthchain.api.config import settings

logger = logging.getLogger(__name__)

# Created lazily so importing the app never opens a connection
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine

    if _engine is None:
        url = make_url(settings.DATABASE_URL)
        logger.info("Creating engine for %s", url.render_as_string(hide_password=True))
        _engine = create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            pool_pre_ping=True,
        )

    return _engine


def get_session_maker() -> async_sessionmaker:
    """Get or create the session factory."""
    global _async_session_maker

    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _async_session_maker


async def init_db() -> None:
    """Check connectivity; create tables when running in DEBUG."""
    from healthchain.api.db.models import Base

    async with get_engine().begin() as conn:
        if settings.DEBUG:
            # Production schema comes from the alembic migrations
            logger.info("Creating tables (DEBUG mode)")
            await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready")


async def close_db() -> None:
    """Dispose of the engine."""
    global _engine, _async_session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        logger.info("Database connection closed")


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Standalone session for work outside a request (background workers)."""
    async with get_session_maker()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session dependency.

    Anything a service left uncommitted when the request fails is rolled
    back, so writes that must survive an error are committed before it
    is raised.
    """
    async with session_scope() as session:
        yield session
        await session.commit()


async def lock_subject(db: AsyncSession, subject_id: uuid.UUID) -> bool:
    """
    Serialise writers for one subject inside the current transaction.

    Takes a row lock on the subject's user row (SELECT ... FOR UPDATE on
    PostgreSQL; SQLite already serialises writers). Returns False if the
    subject does not exist.
    """
    from healthchain.api.db.models import User

    result = await db.execute(
        select(User.id).where(User.id == subject_id).with_for_update()
    )
    return result.scalar_one_or_none() is not None
