"""Database configuration and base setup for Content Desk."""

from typing import Generator, Optional

import structlog
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _ensure_sync_driver(url: URL) -> URL:
    """Force a synchronous driver for Alembic and the ORM engine."""

    if url.drivername.startswith("postgresql+"):
        # Normalize any async driver variants to psycopg (sync)
        if any(token in url.drivername for token in ("async", "aiopg")):
            url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("sqlite+"):
        if "aiosqlite" in url.drivername:
            url = url.set(drivername="sqlite")

    return url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Return a database URL with a guaranteed synchronous driver."""

    url = make_url(raw_url or get_settings().database_url)
    # str(url) would mask the password with ***
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """
    Create and cache the database engine.

    Lazy so that the database URL is read at runtime, not at import time.
    """
    global _engine
    if _engine is not None:
        return _engine

    database_url = get_database_url()

    if database_url.startswith("sqlite"):
        # SQLite configuration for development/testing
        _engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        # PostgreSQL configuration for production
        _engine = create_engine(
            database_url,
            pool_size=20,
            max_overflow=30,
            pool_pre_ping=True,
            pool_recycle=3600,
        )

    return _engine


def get_session_local() -> sessionmaker:
    """Get a sessionmaker bound to the current engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    """Dependency to get database session."""
    session_local = get_session_local()
    db = session_local()
    try:
        yield db
    finally:
        db.close()


def init_database() -> None:
    """Create all tables that do not exist yet."""
    # Import all models to ensure they're registered with Base
    from . import audit_models, models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
    logger.info("database_initialized")


def drop_database() -> None:
    """Drop all database tables. Use with caution!"""
    from . import audit_models, models  # noqa: F401

    Base.metadata.drop_all(bind=get_engine())
    logger.warning("database_dropped")
