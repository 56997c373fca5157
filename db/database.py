"""
Database connection and session management for the photo library.

Provides:
- Connection pooling via SQLAlchemy
- Session factory with context manager support
- Database initialization and verification
- Configuration loading from environment variables
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine, make_url, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────────────────────────────────────────

def get_database_url() -> str:
    """
    Build the database URL from environment variables.

    DATABASE_URL wins when set; otherwise a PostgreSQL URL is assembled
    from the DB_* variables.

    Returns:
        Connection string in SQLAlchemy format.

    Raises:
        ValueError: If required environment variables are missing.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "photo_library")
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD")

    if not password:
        raise ValueError(
            "DB_PASSWORD environment variable is required (or set DATABASE_URL). "
            "Please set it in your .env file."
        )

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def get_pool_settings() -> dict:
    """
    Get connection pool settings from environment variables.

    Returns:
        Dictionary with pool configuration.
    """
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,   # Recycle connections after 1 hour
    }


def build_engine(database_url: str) -> Engine:
    """
    Create an engine suited to the database dialect.

    SQLite connections are shared across the batch and enrichment
    threads, so they skip the same-thread check; in-memory databases
    use a single static connection.

    Args:
        database_url: SQLAlchemy connection string.

    Returns:
        Configured SQLAlchemy Engine instance.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(database_url, echo=False, **get_pool_settings())


# ────────────────────────────────────────────────────────────────────────────────
# Engine and Session Management
# ────────────────────────────────────────────────────────────────────────────────

# Global engine instance (lazy initialization)
_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_engine() -> Engine:
    """
    Get or create the SQLAlchemy engine with connection pooling.

    Returns:
        Configured SQLAlchemy Engine instance.
    """
    global _engine

    if _engine is None:
        database_url = get_database_url()

        logger.info("Creating database engine...")
        _engine = build_engine(database_url)
        logger.info(f"Engine created for dialect '{_engine.dialect.name}'")

    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get or create the session factory.

    Returns:
        Configured sessionmaker instance.
    """
    global _session_factory

    if _session_factory is None:
        engine = get_engine()
        _session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    return _session_factory


@contextmanager
def session_scope(
    session_factory: sessionmaker | None = None
) -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic commit/rollback.

    Args:
        session_factory: Factory to draw the session from. Defaults to
                         the environment-configured factory.

    Yields:
        SQLAlchemy Session instance.

    Example:
        with session_scope() as session:
            image = session.get(Image, 1)
            image.status = ImageStatus.COMPLETED
        # Automatically commits on success, rolls back on exception
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Session rollback due to: {e}")
        raise
    finally:
        session.close()


# ────────────────────────────────────────────────────────────────────────────────
# Database Initialization
# ────────────────────────────────────────────────────────────────────────────────

def init_db(engine: Engine | None = None) -> bool:
    """
    Initialize database by creating all tables.

    Args:
        engine: Engine to create tables on. Defaults to get_engine().

    Returns:
        True if successful, False otherwise.
    """
    try:
        engine = engine or get_engine()
        logger.info("Creating database tables...")
        Base.metadata.create_all(engine)
        logger.info("Database tables created successfully!")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


def verify_connection() -> bool:
    """
    Verify database connection is working.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            result.fetchone()
        logger.info("Database connection verified successfully!")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


def get_db_info() -> dict:
    """
    Get database connection information (for debugging).

    Returns:
        Dictionary with connection details (password masked).
    """
    try:
        url = make_url(get_database_url())
    except ValueError as e:
        return {"error": str(e)}

    info = {
        "dialect": url.get_backend_name(),
        "url": url.render_as_string(hide_password=True),
    }
    if info["dialect"] != "sqlite":
        info["pool_size"] = os.getenv("DB_POOL_SIZE", "5")
        info["max_overflow"] = os.getenv("DB_MAX_OVERFLOW", "10")
    return info


# ────────────────────────────────────────────────────────────────────────────────
# Cleanup
# ────────────────────────────────────────────────────────────────────────────────

def dispose_engine() -> None:
    """
    Dispose of the engine and close all connections.

    Call this when shutting down the application.
    """
    global _engine, _session_factory

    if _engine is not None:
        logger.info("Disposing database engine...")
        _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed.")
