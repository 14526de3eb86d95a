"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory.
    Exposes a FastAPI dependency and a context manager for database access.

WHY:
    - API endpoints get a request-scoped session through get_db()
    - Workers and scripts use get_sync_session() where FastAPI injection
      isn't available
    - Backfills commit per event, so a plain sync session is all we need

USAGE:
    from attribution_engine.database import SessionLocal, get_db

    @app.get("/items")
    def get_items(db: Session = Depends(get_db)):
        return db.query(Item).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - attribution_engine/routers/ (consumers of these sessions)
"""

import os
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from attribution_engine.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session(session_factory: Optional[Callable[[], Session]] = None) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For use in workers, scripts, and tests where FastAPI
        dependency injection isn't available.
        Workers pass their own `session_factory` (tests inject one bound
        to an in-memory engine).

    Example:
        with get_sync_session() as db:
            events = db.query(TrackingEvent).all()
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
