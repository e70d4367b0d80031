"""
SQLAlchemy 2.0 Database Configuration

Async engine and session factories built from settings, plus the
declarative base shared by all ORM tables.
"""

from datetime import UTC, datetime
from urllib.parse import quote_plus

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from telehealth.settings import settings

# ==========================================
# Database URLs from settings
# ==========================================


def get_async_database_url() -> str:
    """Get the async database URL from settings."""
    if settings.database.url:
        url = str(settings.database.url)
    elif settings.is_development and not settings.database.password:
        # In development, use SQLite if PostgreSQL is not configured
        url = "sqlite:///./telehealth_dev.sqlite"
    else:
        username = quote_plus(settings.database.username)
        password = quote_plus(settings.database.password) if settings.database.password else ""
        url = (
            f"postgresql://{username}:{password}"
            f"@{settings.database.host}:{settings.database.port}/{settings.database.database}"
        )

    # Convert to async driver
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        url = get_async_database_url()
        if url.startswith("sqlite"):
            _async_engine = create_async_engine(url, echo=settings.database.echo)
        else:
            _async_engine = create_async_engine(
                url,
                echo=settings.database.echo,
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_pre_ping=settings.database.pool_pre_ping,
            )
    return _async_engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the session factory bound to the shared engine."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return _async_session_maker


async def create_all_tables(engine: AsyncEngine | None = None) -> None:
    """Create every table registered on ``Base``."""
    # Import ORM tables so they register with the metadata
    from telehealth.billing import entities  # noqa: F401

    target = engine or get_async_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the shared engine and forget the session factory."""
    global _async_engine, _async_session_maker
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_maker = None
