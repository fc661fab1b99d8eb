"""
Database connection management for SARCheck

Builds the SQLAlchemy engine from configuration or environment, verifies
it with a retried connect, and hands out sessions to the storage layer.
"""

import os
import logging
from typing import Any, Dict, Generator, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, text, Engine
from sqlalchemy.engine import URL
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "sar_password"


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database connection settings."""
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "sar_database"
    user: str = "sar_user"
    password: str = DEFAULT_PASSWORD
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Settings from DATABASE_URL / DB_* environment variables."""
        return cls(
            url=os.getenv("DATABASE_URL") or None,
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "sar_database"),
            user=os.getenv("DB_USER", "sar_user"),
            password=os.getenv("DB_PASSWORD", DEFAULT_PASSWORD),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    @classmethod
    def from_config(cls, db) -> 'DatabaseSettings':
        """Settings from the `database` config section.

        A null password in config.yaml is read from DB_PASSWORD so the
        secret can stay out of the file.
        """
        return cls(
            url=db.url or os.getenv("DATABASE_URL") or None,
            host=db.host,
            port=db.port,
            database=db.name,
            user=db.user,
            password=db.password or os.getenv("DB_PASSWORD", DEFAULT_PASSWORD),
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            echo=db.echo
        )

    def get_url(self) -> str:
        """Explicit URL if set, otherwise a PostgreSQL URL built from the parts."""
        if self.url:
            return self.url
        return URL.create(
            "postgresql+psycopg2",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database
        ).render_as_string(hide_password=False)

    def get_pool_settings(self) -> Dict[str, Any]:
        """Pool keyword arguments for create_engine(); SQLite uses its defaults."""
        if self.get_url().startswith("sqlite"):
            return {}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# Retries only while the server is unreachable (e.g. container still starting)
connect_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and session factory for the SQLAlchemy storage backend.

    Usage:
        provider = DatabaseSessionProvider(settings)
        provider.init()
        provider.create_tables()

        with provider.open_session() as session:
            storage = SqlAlchemyStorage(session)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Connection settings (from environment if not provided)
            engine: Pre-created engine, e.g. in-memory SQLite for tests
        """
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    def init(self) -> None:
        """Create the engine (if none was given) and the session factory."""
        if self._session_factory is not None:
            return

        if self._engine is None:
            self._engine = self._connect()

        # Objects stay readable after commit; responses are built post-commit
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info("Database session provider initialized")

    @connect_retry
    def _connect(self) -> Engine:
        engine = create_engine(
            self._settings.get_url(),
            echo=self._settings.echo,
            **self._settings.get_pool_settings()
        )
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

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

    @contextmanager
    def open_session(self) -> Generator[Session, None, None]:
        """Session closed on exit. Commit and rollback belong to the caller."""
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def drop_tables(self) -> None:
        """Drop all tables. Test teardown only."""
        Base.metadata.drop_all(self.engine)
        logger.warning("Database tables dropped")

    def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        try:
            with self.open_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider for tests; defaults to in-memory SQLite."""
    return DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite://"),
        engine=engine
    )
