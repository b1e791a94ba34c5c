import logging
from contextlib import contextmanager
from typing import Any
from typing import Iterator

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from shelter_sync.config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()


# Create Base class
Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    SQLite connections get ``check_same_thread=False`` (FastAPI runs sync
    dependencies in a thread pool) and foreign-key enforcement, so a comment
    whose post is missing is rejected by the store instead of silently kept.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)

    engine = create_engine(db_url, connect_args=connect_args, **kwargs)

    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes accessible after a commit so
    services can build their results from rows after the unit of work that
    loaded them has been closed.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


# Default engine and sessionmaker instances for app usage.  Tests overwrite
# ``shelter_sync.database.default_session_factory`` before importing the app.

default_engine = make_engine(_settings.database_url)
default_session_factory = make_sessionmaker(default_engine)


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory (resolved at call time)."""

    return default_session_factory


def get_db() -> Iterator[Session]:
    """Dependency provider for database sessions.

    Yields:
        SQLAlchemy Session object bound to the current session factory
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(session_factory: Any = None) -> Iterator[Session]:
    """Unit-of-work context manager for services and background tasks.

    1. Auto-commit on success
    2. Auto-rollback on error (the original exception is re-raised)
    3. Always close

    Usage:
        with db_session(factory) as db:
            crud.create_sync_log(db, ...)
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        session.commit()

    except Exception as e:
        session.rollback()
        logger.debug(f"Database session rolled back due to error: {e}")
        raise

    finally:
        session.close()


def initialize_database(engine: Engine = None) -> None:
    """Create all tables on *engine* (defaults to the default engine)."""

    # Import models so they are registered with Base
    from shelter_sync.models import models  # noqa: F401

    target_engine = engine or default_engine
    Base.metadata.create_all(bind=target_engine)


__all__ = [
    "Base",
    "make_engine",
    "make_sessionmaker",
    "default_engine",
    "default_session_factory",
    "get_session_factory",
    "get_db",
    "db_session",
    "initialize_database",
]
