"""
Database engine and session management.

Engines and session factories are built from Settings by the composing
application (AccessRuntime) rather than cached at module level.

Usage:
    engine = create_db_engine(settings)
    SessionLocal = create_session_factory(engine)

    @router.get("/items")
    def get_items(db: Session = Depends(get_db_session)):
        ...
"""

import logging
from contextlib import contextmanager
from typing import Generator, Iterator

from fastapi import HTTPException, Request, status
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from accessgate.config.settings import Settings

logger = logging.getLogger(__name__)


def create_db_engine(settings: Settings) -> Engine:
    """
    Create the database engine.

    Uses connection pooling with sensible defaults for production:
    - pool_size: 5 connections
    - max_overflow: 10 additional connections under load
    - pool_pre_ping: Verify connections before use
    """
    if not settings.database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if settings.database_url.startswith("sqlite"):
        engine = create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            settings.database_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=1800,
        )

    if settings.db_statement_timeout_ms and engine.dialect.name == "postgresql":
        timeout_ms = int(settings.db_statement_timeout_ms)

        @event.listens_for(engine, "connect")
        def _set_statement_timeout(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"SET statement_timeout = {timeout_ms}")
            cursor.close()

    logger.info(
        "database.engine_created",
        extra={"dialect": engine.dialect.name},
    )
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Creates a new session for each request from the runtime's session
    factory and ensures cleanup. Raises HTTP 503 if no database is
    configured.
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or runtime.session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = runtime.session_factory()
    try:
        yield session
    finally:
        session.close()


# SQLSTATE query_canceled, raised when statement_timeout fires.
_QUERY_CANCELED = "57014"


@contextmanager
def statement_timeout(db: Session, timeout_ms: int) -> Iterator[None]:
    """
    Bound every statement db issues inside the block to timeout_ms.

    PostgreSQL only; other dialects run the block unbounded. The setting is
    transaction-local and the previous value is restored on the way out.
    After a failed statement the transaction is aborted and its rollback
    discards the setting, so nothing is restored in that case.
    """
    if timeout_ms <= 0 or db.get_bind().dialect.name != "postgresql":
        yield
        return

    previous = db.execute(text("SELECT current_setting('statement_timeout')")).scalar()
    db.execute(
        text("SELECT set_config('statement_timeout', :value, true)"),
        {"value": f"{int(timeout_ms)}ms"},
    )
    failed = False
    try:
        yield
    except SQLAlchemyError:
        failed = True
        raise
    finally:
        if not failed:
            db.execute(
                text("SELECT set_config('statement_timeout', :value, true)"),
                {"value": previous},
            )


def is_statement_timeout(error: SQLAlchemyError) -> bool:
    """True if error is PostgreSQL cancelling a statement for its timeout."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == _QUERY_CANCELED
