"""
Database engine and sessions for the API, the sweeps and the scheduler worker.

Connection settings come from BillingSettings (DATABASE_URL, DB_POOL_SIZE,
DB_MAX_OVERFLOW, DB_POOL_RECYCLE_SECONDS). PostgreSQL gets a pre-pinged
QueuePool; SQLite URLs are accepted for local runs.

Usage:
    from citaclick.database.session import session_scope

    with session_scope() as db:
        run_expiry_sweep(db, build_lifecycle_engine(db))
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from citaclick.config.billing_settings import BillingSettings, get_billing_settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def normalize_database_url(database_url: str) -> str:
    """Accept the postgres:// scheme some hosts hand out."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def build_engine(settings: BillingSettings) -> Engine:
    """
    Create an engine for settings.database_url.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    if not settings.database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    url = make_url(normalize_database_url(settings.database_url))
    if url.get_backend_name() == "sqlite":
        engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=settings.db_pool_recycle_seconds,
        )

    logger.info("Database engine created", extra={
        "backend": url.get_backend_name(),
        "host": url.host,
        "database": url.database,
        "pool_size": settings.db_pool_size,
    })
    return engine


def get_session_factory() -> sessionmaker:
    """Process-wide session factory, built from the environment on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine(get_billing_settings())
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _session_factory


def dispose_engine() -> None:
    """Close pooled connections and forget the factory."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One session for a job run, closed on exit.

    Raises:
        RuntimeError: If the database is not configured
    """
    try:
        factory = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = factory()
    try:
        yield session
    finally:
        session.close()
