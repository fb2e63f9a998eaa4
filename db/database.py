"""
Database configuration and session management.

SQLite vs PostgreSQL Compatibility Notes:
-----------------------------------------
This module supports both SQLite (development, tests) and PostgreSQL (production).

1. func.now() - Works on both (SQLite: datetime('now'), PostgreSQL: NOW())
2. ForeignKey with ondelete - Works on both (SQLite requires PRAGMA foreign_keys=ON)
3. UPDATE ... RETURNING - used for conditional token revocation (SQLite 3.35+)
4. SQLite returns naive datetimes even for DateTime(timezone=True) columns;
   see models.base.ensure_utc

For production, always use PostgreSQL with proper connection pooling.
"""

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def normalize_database_url(database_url: str) -> str:
    """Convert URL for async drivers."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with per-backend pool and pragma setup."""
    database_url = normalize_database_url(database_url)
    is_sqlite = database_url.startswith("sqlite")

    engine_kwargs: dict = {"echo": echo}

    if not is_sqlite:
        # pool_pre_ping: verify connections are alive before using them.
        # Total max connections = pool_size + max_overflow = 15
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10

    new_engine = create_async_engine(database_url, **engine_kwargs)

    # SQLite does not enforce foreign keys by default - must be enabled per connection
    if is_sqlite:
        @event.listens_for(new_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


settings = get_settings()
engine = build_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def get_db():
    """
    Yield a database session scoped to one request.

    The session never auto-commits; callers go through a UnitOfWork for
    explicit transaction control. Rollback on exception is kept as a safety net.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine = None) -> None:
    """Create all tables that don't exist yet."""
    # Import models so they register with Base.metadata
    from models import refresh_token, social_login, user  # noqa: F401

    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
