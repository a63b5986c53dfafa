"""
Database Connection Module

Provides synchronous session management for the access-control core.

Usage:
    with get_db_session() as session:
        result = session.execute(query)
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, QueuePool, StaticPool

from config.database import DatabaseSettings, get_database_settings
from database.models import Base

logger = logging.getLogger(__name__)

# Global engine and session factory (lazy initialization)
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(settings: DatabaseSettings) -> Engine:
    """
    Create a SQLAlchemy engine for the given settings.

    In-memory SQLite uses a single shared connection so every session sees
    the same database.
    """
    url = settings.url

    if settings.is_sqlite:
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            pool_class = StaticPool
        else:
            # sqlite_path is only consulted when no full URL is given
            if not settings.url_override:
                settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            pool_class = NullPool
        pool_kwargs = {}
    else:
        pool_class = QueuePool
        pool_kwargs = {
            "pool_size": settings.pool_size,
            "max_overflow": settings.max_overflow,
            "pool_timeout": settings.pool_timeout,
            "pool_recycle": settings.pool_recycle,
            "pool_pre_ping": settings.pool_pre_ping,
        }

    logger.info(
        "Creating database engine",
        extra={"extra_data": {"driver": url.split(":", 1)[0], "pool": pool_class.__name__}},
    )

    return create_engine(
        url,
        echo=settings.echo_sql,
        poolclass=pool_class,
        connect_args=settings.get_connect_args(),
        **pool_kwargs,
    )


def get_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """
    Get or create the process-wide engine.

    Args:
        settings: Database settings. If None, loads from environment.
    """
    global _engine

    if _engine is None:
        _engine = build_engine(settings or get_database_settings())

    return _engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory with the options the core relies on."""
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory(settings: Optional[DatabaseSettings] = None) -> sessionmaker:
    """
    Get or create the process-wide session factory.

    Returns:
        sessionmaker: Factory for creating sessions.
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = make_session_factory(get_engine(settings))

    return _session_factory


def create_schema(engine: Engine) -> None:
    """Create the access-control tables when missing."""
    # Registers the mapped classes on Base.metadata
    import core.access_control.models  # noqa: F401

    Base.metadata.create_all(engine, checkfirst=True)


@contextmanager
def get_db_session(
    settings: Optional[DatabaseSettings] = None
) -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.

    Yields:
        Session: SQLAlchemy session that auto-commits on success, rollbacks on error.
    """
    session = get_session_factory(settings)()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_engine() -> None:
    """
    Dispose the engine and cleanup connections.

    Should be called during application shutdown.
    """
    global _engine, _session_factory

    if _engine is not None:
        logger.info("Closing database engine")
        _engine.dispose()
        _engine = None
        _session_factory = None
