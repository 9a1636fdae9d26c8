"""
Database session management with connection pooling.

Provides the engine and session factory shared by the webhook route, the
grace-period reconciler and the entitlement service.

Usage:
    from habit_billing.database.session import get_session_factory

    session = get_session_factory()()
"""

import logging
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def normalize_database_url(database_url: str) -> str:
    """Convert Heroku/Render style postgres:// URLs to postgresql://."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    return normalize_database_url(database_url)


def build_engine(database_url: str) -> Engine:
    """
    Create an engine with pooling appropriate for the backend.

    PostgreSQL gets a QueuePool sized for concurrent webhook deliveries.
    In-memory SQLite must share one connection, so it uses StaticPool.
    """
    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connection health
        pool_recycle=1800,   # Recycle connections after 30 minutes
    )


def get_engine() -> Engine:
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(_get_database_url())
            logger.info("Database engine created")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine()
        )
    return _SessionLocal


def configure_session_factory(factory: Optional[sessionmaker]) -> None:
    """Install (or clear) the session factory; used by tests and scripts."""
    global _SessionLocal, _engine
    _SessionLocal = factory
    if factory is None:
        _engine = None
