"""
Database engine and session management for the metadata ledger.

This module provides:
- Engine creation for SQLite (development, tests) and PostgreSQL (production)
- Session-per-operation pattern through the session_scope() context manager
- NullPool connection pooling for SQLite files to avoid locking issues
- SQLite optimization settings (WAL mode, foreign keys, timeouts)

Nothing is created at import time: the process entry point builds one engine
and one session factory and hands them to the components that need them.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from scraper_worker.errors import ConfigError, LedgerError
from scraper_worker.logger import log_function
from .models import Base


db_logger = logging.getLogger("scraper_worker.database")


def optimize_sqlite_connection(dbapi_connection, connection_record):
    """Apply SQLite-specific optimizations when connection is created."""
    cursor = dbapi_connection.cursor()

    # Enable WAL mode for better concurrent access
    cursor.execute("PRAGMA journal_mode=WAL")

    # Set busy timeout to 30 seconds to handle locks
    cursor.execute("PRAGMA busy_timeout=30000")

    # Enable foreign key constraints
    cursor.execute("PRAGMA foreign_keys=ON")

    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _is_memory_sqlite(url) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for the ledger.

    Args:
        database_url: SQLAlchemy URL (sqlite:///..., postgresql+psycopg2://...)
        echo: Log emitted SQL

    Returns:
        Engine: Configured engine

    Raises:
        ConfigError: If the URL is missing or cannot be parsed
    """
    if not database_url:
        raise ConfigError("DATABASE_URL is not set")

    try:
        url = make_url(database_url)
    except Exception as e:
        raise ConfigError(f"Invalid database URL format: {e}") from e

    if url.get_backend_name() == "sqlite":
        # An in-memory database only lives as long as its single connection
        poolclass = StaticPool if _is_memory_sqlite(url) else NullPool
        engine = create_engine(
            url,
            poolclass=poolclass,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": 30,
            },
        )
        event.listen(engine, "connect", optimize_sqlite_connection)
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)

    db_logger.info(f"Database engine created for backend {url.get_backend_name()}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to ``engine``."""
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions (session-per-operation pattern).

    Commits when the block exits normally, rolls back on any error and
    always closes the session.

    Usage:
        with session_scope(SessionLocal) as session:
            session.add(Work(title="Solo Leveling"))

    Raises:
        LedgerError: For database errors (the original error is chained)
    """
    session = session_factory()
    try:
        db_logger.debug("Database session created")
        yield session
        session.commit()

    except OperationalError as e:
        db_logger.error(f"Database operational error: {e}")
        session.rollback()

        error_msg = str(e.orig) if getattr(e, "orig", None) is not None else str(e)
        if "database is locked" in error_msg.lower():
            raise LedgerError(
                "Database is locked. This may be due to another process accessing the database."
            ) from e
        elif "no such table" in error_msg.lower():
            raise LedgerError(
                "Database table does not exist. Please run database migrations first."
            ) from e
        raise LedgerError(f"Database operational error: {error_msg}") from e

    except SQLAlchemyError as e:
        db_logger.error(f"Database error: {e}")
        session.rollback()
        raise LedgerError(f"Database error: {e}") from e

    except Exception:
        session.rollback()
        raise

    finally:
        session.close()
        db_logger.debug("Database session closed")


@log_function(logger_name="scraper_worker.database", log_execution_time=True)
def check_database_connection(session_factory: sessionmaker) -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection is successful, False otherwise
    """
    try:
        with session_scope(session_factory) as session:
            session.execute(text("SELECT 1"))
            db_logger.info("Database connection test successful")
            return True

    except LedgerError as e:
        db_logger.error(f"Database connection test failed: {e}")
        return False


@log_function(logger_name="scraper_worker.database", log_execution_time=True)
def init_database(engine: Engine) -> None:
    """
    Create all tables defined in the models.

    Note: This does not run Alembic migrations. Use alembic commands for migrations.

    Raises:
        LedgerError: If the tables cannot be created
    """
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        db_logger.error(f"Failed to initialize database: {e}")
        raise LedgerError(f"Failed to initialize database: {e}") from e
    db_logger.info("Database tables created successfully")
