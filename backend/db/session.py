"""
Offer Index Database Session Management

Async SQLAlchemy engine and session factory builders. Handles are created by
the process that owns them (API lifespan, worker task) and passed down.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings


def build_engine(settings: Settings, **overrides) -> AsyncEngine:
    """Create an async engine for ``settings.database_url``."""
    options = {"echo": settings.database_echo, "pool_pre_ping": True}
    if settings.database_url.startswith("postgresql"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    options.update(overrides)
    return create_async_engine(settings.database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
