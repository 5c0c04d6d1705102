"""
Database Configuration
======================

SQLAlchemy async database setup with connection pooling and session management.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool

from toolexport.core.config import settings
from toolexport.models.base import Base


# Create async engine with connection pooling
# Tests run against per-test SQLite files; pooled connections would outlive
# the event loop that created them.
_engine_kwargs = dict(
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

if settings.APP_ENV == "test":
    _engine_kwargs["poolclass"] = NullPool
else:
    _engine_kwargs["pool_size"] = 10
    _engine_kwargs["max_overflow"] = 20

engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the job store and the other services."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Session factory
async_session_factory = build_session_factory(engine)


async def create_db_and_tables(bind: AsyncEngine = engine) -> None:
    """
    Create database tables if they don't exist.
    
    Note: In production, use Alembic migrations instead.
    This is primarily for development convenience.
    """
    # Register every mapped table on the metadata before create_all.
    import toolexport.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

