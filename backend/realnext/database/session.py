"""
Engine and session handling.

One engine per process, built lazily from DATABASE_URL. Sessions are
created with autoflush disabled; services flush and commit explicitly.

PostgreSQL gets a QueuePool sized from DB_POOL_SIZE / DB_MAX_OVERFLOW.
SQLite (local runs and the test suite) gets a single shared connection
and explicit BEGIN so SAVEPOINTs nest under the session's transaction.

Usage:
    from realnext.database.session import get_db_session

    @router.get("/leads")
    def list_leads(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def normalize_database_url(database_url: str) -> str:
    """SQLAlchemy only accepts the postgresql:// scheme."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    return normalize_database_url(database_url)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite issues its own BEGIN lazily, which breaks nested transactions
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for `database_url` with dialect-appropriate pooling.

    Args:
        database_url: SQLAlchemy URL (postgres:// is accepted)
        echo: Log emitted SQL

    Returns:
        Engine ready for Base.metadata.create_all / sessions
    """
    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=echo,
    )


def get_engine() -> Engine:
    """Engine singleton for DATABASE_URL."""
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(_get_database_url(), echo=os.getenv("DB_ECHO") == "1")
            logger.info("database.engine_created", extra={"dialect": _engine.dialect.name})
        except ValueError as e:
            logger.error("database.engine_failed", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), autoflush=False)
    return _SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency: one session per request, closed afterwards.

    Raises HTTP 503 when DATABASE_URL is not configured.
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


def reset_engine() -> None:
    """Dispose the engine singleton (tests and forked workers)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
