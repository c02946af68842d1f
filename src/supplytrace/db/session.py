"""
Database Session Management

Provides the analytic store engine, session factory and session scope.
The engine is created on first use so importing this module never opens a
connection.
"""
import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Generator, Optional

from sqlalchemy import create_engine, event, exc, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import settings
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None
_lock = threading.Lock()


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine with connection pooling and logging listeners.

    Pool sizing applies to server databases only; SQLite uses its own pool.
    """
    if url.startswith("sqlite"):
        engine = _build_sqlite_engine(url, echo)
    else:
        engine = create_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=echo,
        )

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        logger.debug("database_connection_established", dialect=engine.dialect.name)

    @event.listens_for(engine, "invalidate")
    def receive_invalidate(dbapi_conn, connection_record, exception):
        logger.warning(
            "database_connection_invalidated",
            exception=str(exception) if exception else None
        )

    return engine


def _build_sqlite_engine(url: str, echo: bool) -> Engine:
    """
    SQLite engine for tests and local runs.

    pysqlite's own transaction handling is disabled so SAVEPOINTs work; each
    transaction takes the write lock up front since SQLite allows one writer.
    """
    kwargs = {"echo": echo, "connect_args": {"check_same_thread": False, "timeout": 30}}
    if ":memory:" in url or url.rstrip("/") == "sqlite:":
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def disable_pysqlite_transactions(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_engine() -> Engine:
    """Return the process-wide analytic store engine, creating it on first call."""
    global _engine
    with _lock:
        if _engine is None:
            _engine = build_engine(settings.database_url, echo=settings.database_echo)
            logger.info("database_engine_created", dialect=_engine.dialect.name)
        return _engine


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory bound to get_engine()."""
    global _session_factory
    engine = get_engine()
    with _lock:
        if _session_factory is None:
            _session_factory = create_session_factory(engine)
        return _session_factory


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False
    )


@contextmanager
def get_db_session(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Get database session with automatic commit, rollback and cleanup.

    Usage:
        with get_db_session() as session:
            repository.count(session)

    Args:
        session_factory: Factory to use instead of the process-wide one

    Yields:
        Database session

    Raises:
        Exception: Re-raises any exception after rollback
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
        logger.debug("database_session_committed")
    except exc.SQLAlchemyError as e:
        session.rollback()
        logger.error(
            "database_session_rollback",
            error=str(e),
            error_type=type(e).__name__
        )
        raise
    except Exception as e:
        session.rollback()
        logger.error(
            "database_session_error",
            error=str(e),
            error_type=type(e).__name__
        )
        raise
    finally:
        session.close()


def health_check(session_factory: Optional[sessionmaker] = None) -> bool:
    """
    Check database connection health.

    Returns:
        True if database is accessible, False otherwise
    """
    try:
        with get_db_session(session_factory) as session:
            session.execute(text("SELECT 1"))
        logger.info("database_health_check_success")
        return True
    except exc.SQLAlchemyError as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__
        )
        return False


def create_all_tables(engine: Optional[Engine] = None):
    """
    Create all analytic store tables.

    WARNING: Use Alembic migrations in production.
    This is only for testing and local setup.
    """
    from src.supplytrace.db.base import Base, import_all_models

    logger.info("creating_database_tables")
    import_all_models()
    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("database_tables_created")


def dispose_engine():
    """Close all pooled connections and forget the engine."""
    global _engine, _session_factory
    with _lock:
        if _engine is not None:
            _engine.dispose()
            logger.info("database_connections_closed")
        _engine = None
        _session_factory = None


def with_retry(max_retries: int = 3, retry_delay: float = 1.0):
    """
    Decorator to retry database operations on transient failures.

    Args:
        max_retries: Maximum number of attempts
        retry_delay: Base delay; attempt n waits retry_delay * n seconds
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except (exc.OperationalError, exc.DisconnectionError) as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            "database_operation_retry",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            error=str(e)
                        )
                        time.sleep(retry_delay * (attempt + 1))
                    else:
                        logger.error(
                            "database_operation_failed_after_retries",
                            max_retries=max_retries,
                            error=str(e)
                        )

            raise last_exception

        return wrapper
    return decorator
