"""
Relational Store Adapter for the Affiliation Service

This module provides:
- Unit of Work pattern for explicit transaction boundaries
- Connection pooling configured from the SH_* environment
- query/execute primitives returning mapping rows and (rowcount, lastrowid)
- Translation of driver errors into coded service errors, secrets redacted
- Health checks and connection validation with retry logic

It is the only module that talks to the database driver directly; the
repositories, queries and the merge engine all go through it.

Uses SQLAlchemy 2.0 style with proper typing support.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, List, Mapping, Optional, Tuple, Union

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql.base import Executable
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config_manager import ConfigManager
from database.models import Base
from database.monitoring import check_health, HealthStatus
from errors import AffiliationError, ConflictError, InternalError, redact
from structured_logging import sanitize_for_logging

logger = logging.getLogger(__name__)

Statement = Union[str, Executable]


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Affiliation store engine settings."""
    url: str = "sqlite://"
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = 30
    origin: str = "da-affiliation-api"
    sql_out: bool = False
    echo: bool = False

    @classmethod
    def from_config(cls, config: ConfigManager) -> 'DatabaseSettings':
        """Create settings from a loaded ConfigManager."""
        db = config.database
        return cls(
            url=db.url(),
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_recycle=db.pool_recycle,
            origin=db.origin,
            sql_out=config.logging.sql_out,
        )

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Create settings from environment variables."""
        return cls.from_config(ConfigManager.get_instance())

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


def get_pool_settings(settings: DatabaseSettings) -> dict:
    """
    Connection pool keyword arguments for create_engine.

    SQLite URLs get the dialect's default pool, which takes no sizing.
    """
    if settings.is_sqlite:
        return {}
    return {
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_recycle": settings.pool_recycle,
        "pool_pre_ping": True,
    }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
):
    """
    Create a retry decorator for transient connection failures.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# ERROR TRANSLATION AND PRIMITIVES
# ============================================

def translate_error(exc: Exception, context: str) -> AffiliationError:
    """
    Map a driver error to a coded service error with secrets redacted.

    Integrity violations (duplicate keys, broken references) become
    ConflictError; every other SQLAlchemy error becomes InternalError.
    """
    if isinstance(exc, AffiliationError):
        return exc
    detail = redact(str(getattr(exc, "orig", None) or exc))
    message = f"{context}: {detail}"
    if isinstance(exc, IntegrityError):
        err: AffiliationError = ConflictError(message)
    else:
        err = InternalError(message)
    err.__cause__ = exc
    return err


def _as_statement(statement: Statement) -> Executable:
    return text(statement) if isinstance(statement, str) else statement


def query(
    session: Session,
    statement: Statement,
    params: Optional[Mapping[str, Any]] = None,
) -> List[RowMapping]:
    """
    Run a parameterized read and return all rows as mappings.

    Args:
        session: Open session (its transaction is reused)
        statement: Raw SQL text with :named binds, or a Core select
        params: Bind parameters

    Raises:
        InternalError: On any driver failure
    """
    try:
        result = session.execute(_as_statement(statement), params or {})
        return list(result.mappings().all())
    except SQLAlchemyError as e:
        raise translate_error(e, "query")


def execute(
    session: Session,
    statement: Statement,
    params: Optional[Union[Mapping[str, Any], List[Mapping[str, Any]]]] = None,
) -> Tuple[int, Optional[int]]:
    """
    Run a parameterized write; a list of parameter sets runs it as executemany.

    Returns:
        (rows_affected, last_insert_id); last_insert_id is only set for
        single-row inserts

    Raises:
        ConflictError: On integrity violations
        InternalError: On any other driver failure
    """
    statement = _as_statement(statement)
    many = isinstance(params, list)
    if many and not params:
        return 0, None
    try:
        result = session.execute(statement, params or {})
        if many:
            return len(params), None
        last_id = result.lastrowid if getattr(statement, "is_insert", False) else None
        return result.rowcount, last_id
    except SQLAlchemyError as e:
        raise translate_error(e, "execute")


def flush(session: Session, context: str) -> None:
    """Flush pending ORM changes, translating driver errors."""
    try:
        session.flush()
    except SQLAlchemyError as e:
        raise translate_error(e, context)


# ============================================
# UNIT OF WORK PATTERN
# ============================================

class UnitOfWork:
    """
    Unit of Work pattern for explicit transaction management.

    A failure after entering and before commit() rolls back; the session is
    released on every exit path.

    Usage:
        with UnitOfWork(session_factory) as uow:
            IdentityRepository(uow.session).add(...)
            uow.commit()
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'UnitOfWork':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork not started. Use as context manager.")
        return self._session

    def commit(self) -> None:
        if self._session:
            self._session.commit()

    def rollback(self) -> None:
        if self._session:
            self._session.rollback()

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None


# ============================================
# DATABASE SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the affiliation store engine and hands out transactional sessions.

    Usage:
        provider = DatabaseSessionProvider()
        provider.init()
        with provider.session_scope() as session:
            ...
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None,
    ):
        """
        Args:
            settings: Engine settings (read from the environment if not provided)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    @property
    def settings(self) -> DatabaseSettings:
        if self._settings is None:
            self._settings = DatabaseSettings.from_env()
        return self._settings

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Create the engine and the session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self.settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()

        self._initialized = True
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        """Create database engine with retry logic."""
        engine = create_engine(
            self.settings.url,
            echo=self.settings.echo,
            **get_pool_settings(self.settings)
        )

        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:
        """Per-connection session setup and SQL logging."""
        dialect = self._engine.dialect.name
        origin = self._settings.origin if self._settings else "da-affiliation-api"
        sql_out = bool(self._settings and self._settings.sql_out)

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            try:
                if dialect == "mysql":
                    cursor.execute("SET @origin = %s", (origin,))
                elif dialect == "sqlite":
                    cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()
            logger.debug("New database connection established")

        @event.listens_for(self._engine, "before_cursor_execute")
        def on_execute(conn, cursor, statement, parameters, context, executemany):
            if sql_out:
                logger.debug(f"SQL: {sanitize_for_logging(statement, 2000)} ARGS: {redact(repr(parameters))}")

        @event.listens_for(self._engine, "handle_error")
        def on_error(exception_context):
            logger.error(
                f"SQL failed: {sanitize_for_logging(exception_context.statement, 2000)} "
                f"ARGS: {redact(repr(exception_context.parameters))} "
                f"ERROR: {redact(str(exception_context.original_exception))}"
            )

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    def get_unit_of_work(self) -> UnitOfWork:
        """Get a Unit of Work for explicit transaction management."""
        if self._session_factory is None:
            self.init()
        return UnitOfWork(self._session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        One transaction: commits on normal exit, rolls back on any exception.

        Usage:
            with provider.session_scope() as session:
                repo = ProfileRepository(session)
                repo.edit(...)
        """
        with self.get_unit_of_work() as uow:
            yield uow.session
            uow.commit()

    def create_tables(self) -> None:
        """Create all tables (live and archive)."""
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def health_check(self) -> HealthStatus:
        """Probe the store with SELECT 1."""
        if self._session_factory is None:
            self.init()
        return check_health(self._engine, self._session_factory)

    def close(self) -> None:
        """Dispose the engine."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """Get the process-wide database provider."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the process-wide provider. Call during application startup.

    Args:
        echo: If True, let SQLAlchemy echo every statement
    """
    provider = get_db_provider()
    provider.init(echo=echo)
    return provider


def close_db() -> None:
    """Close the process-wide provider. Call during application shutdown."""
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Create an initialized provider for testing.

    Args:
        engine: Pre-created engine (e.g., in-memory SQLite)
        settings: Custom settings for testing
    """
    provider = DatabaseSessionProvider(
        settings=settings or DatabaseSettings(),
        engine=engine
    )
    provider.init()
    return provider
