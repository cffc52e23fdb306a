"""Database engine, session factory and FastAPI dependency.

WHAT:
    Builds the sync SQLAlchemy engine from DATABASE_URL and exposes
    `SessionLocal`, the `get_db()` dependency and `get_sync_session()` for
    workers.

WHY:
    - API routes and arq jobs share one session factory.
    - SQLite (tests, local dev) needs `check_same_thread=False` because the
      API runs sync endpoints on a threadpool.

REFERENCES:
    - careassist/workers/arq_worker.py (job sessions)
    - careassist/services/sequencer.py (relies on UPDATE ... RETURNING)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from careassist.utils.env import require_env


def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = require_env("DATABASE_URL")

    # Heroku-style URLs
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def build_engine(database_url: str):
    """Create an engine with pool settings appropriate for the backend.

    SQLite engines do not support pool_size/max_overflow.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


DATABASE_URL = _get_database_url()
engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in careassist.models to ensure a single registry
from .models import Base  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            jobs = db.query(OutboxJob).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
