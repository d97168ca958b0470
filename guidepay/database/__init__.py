"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from guidepay.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    # Fail fast when the pool is exhausted instead of queueing requests.
    "pool_timeout": 2,
    "pool_recycle": 300,
    "pool_pre_ping": True,
    "pool_use_lifo": True,
}


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Pool and connect args per dialect; SQLite gets neither."""
    if db_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}

    kwargs = dict(_DEFAULT_POOL_KWARGS)
    if db_url.startswith("postgresql"):
        kwargs["connect_args"] = {
            "connect_timeout": 5,
            "options": f"-c statement_timeout={settings.database_statement_timeout_ms}",
            "application_name": "guidepay",
        }
    return kwargs


def build_engine(db_url: str) -> Engine:
    return create_engine(db_url, future=True, **_build_engine_kwargs(db_url))


engine: Engine = build_engine(settings.database_url)


@event.listens_for(engine, "connect")
def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
    logger.debug("Database connection established")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# PostgreSQL SQLSTATEs: deadlock, serialization failure, lock not available.
_RETRYABLE_PGCODES = {"40P01", "40001", "55P03"}
# MySQL error numbers: lock wait timeout, deadlock.
_RETRYABLE_MYSQL_CODES = {1205, 1213}
_RETRYABLE_ERROR_SNIPPETS = (
    "deadlock",
    "lock wait timeout",
    "could not obtain lock",
    "could not serialize access",
    "database is locked",
    "server closed the connection",
    "ssl connection has been closed unexpectedly",
)


def is_retryable_db_error(exc: BaseException) -> bool:
    """True for lock contention and transient disconnects worth retrying."""
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False

    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True

    args = getattr(orig, "args", ()) or ()
    if args and isinstance(args[0], int) and args[0] in _RETRYABLE_MYSQL_CODES:
        return True

    message = str(exc).lower()
    return any(snippet in message for snippet in _RETRYABLE_ERROR_SNIPPETS)


__all__ = [
    "Base",
    "SessionLocal",
    "build_engine",
    "engine",
    "get_db",
    "is_retryable_db_error",
]
