"""
Database engine and session management.

One pooled engine per process, built lazily from AccessControlSettings.
The database-backed sources (roles, policies, compliance rules, A/B tests)
and the audit sink take the session factory; request handlers take a
session through the get_db_session dependency.

Usage:
    from pew_access.database.session import get_db_session

    @router.get("/api/admin/users/{user_id}/overrides")
    async def list_overrides(user_id: str, db: Session = Depends(get_db_session)):
        return UserOverrideRepository(db).list_for_user(user_id)
"""

import logging
from threading import Lock
from typing import Generator, Optional

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from pew_access.config.settings import AccessControlSettings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None
_lock = Lock()


def normalize_database_url(database_url: Optional[str]) -> str:
    """
    Validate DATABASE_URL and rewrite the postgres:// scheme that hosted
    providers hand out to the postgresql:// SQLAlchemy expects.
    """
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _engine_options(url: str, settings: AccessControlSettings) -> dict:
    if url.startswith("sqlite"):
        # Local development database; no server-side pool to size
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


def get_engine(settings: Optional[AccessControlSettings] = None) -> Engine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is not None:
        return _engine
    with _lock:
        if _engine is None:
            settings = settings or AccessControlSettings.from_env()
            try:
                url = normalize_database_url(settings.database_url)
            except ValueError as e:
                logger.error("Failed to create database engine", extra={"error": str(e)})
                raise
            _engine = create_engine(url, **_engine_options(url, settings))
            logger.info(
                "Database engine created",
                extra={"dialect": _engine.dialect.name, "pool_size": settings.db_pool_size},
            )
    return _engine


def get_session_factory(settings: Optional[AccessControlSettings] = None) -> sessionmaker:
    """Get or create the session factory bound to the process-wide engine."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine(settings)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return _SessionLocal


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (shutdown, tests)."""
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _SessionLocal = None


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding one session per request.

    Raises HTTP 503 when no database is configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
