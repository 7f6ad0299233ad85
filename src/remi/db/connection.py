"""
Database connection management for remi.

Provides the SQLite engine (one writer, concurrent WAL readers), session
management, and transaction support.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session

from remi.config import settings
from remi.models.db import Base

_default_engine: Optional[Engine] = None


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA busy_timeout = 5000")
    finally:
        cursor.close()


def create_store_engine(db_path: Path | str, echo: bool = False) -> Engine:
    """
    Create an engine for the store at ``db_path``.

    Every pooled connection gets WAL journaling (readers see the last
    committed state while a sync writes) and enforced foreign keys.

    Args:
        db_path: Database file path, or ":memory:"
        echo: Log SQL statements

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    if str(db_path) == ":memory:":
        url = "sqlite://"
    else:
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{path}"

    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def get_engine() -> Engine:
    """
    Get the process-wide engine for the configured database path.

    Created lazily so that importing remi never touches the filesystem.
    """
    global _default_engine
    if _default_engine is None:
        _default_engine = create_store_engine(settings.database_path)
    return _default_engine


def get_session(engine: Optional[Engine] = None) -> Session:
    """
    Get a new database session.

    Returns:
        Session: A new SQLAlchemy session; the caller commits and closes it
    """
    return Session(
        bind=engine or get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def db_session(engine: Optional[Engine] = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Commits on success, rolls back on any exception, always closes. All
    writes made inside one block are one transaction.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with db_session(engine) as db:
        >>>     CanonicalRepository(db).save_batch(batch)
    """
    session = get_session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Initialize the database schema.

    Creates all tables and the FTS5 message index. Safe to call repeatedly.
    """
    Base.metadata.create_all(bind=engine or get_engine())

