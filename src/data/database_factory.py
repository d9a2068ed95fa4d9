"""
Engine and session management for the link store.

A single process-wide factory owns the engine. Quota counters and link
versions change through conditional UPDATE statements, so PostgreSQL sessions
run at READ COMMITTED and SQLite connections wait on the write lock.
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config.config import DatabaseConfig, config
from src.data.models import Base
from src.exceptions import DatabaseError

logger = logging.getLogger(__name__)

_DSN_PASSWORD = re.compile(r"(://[^:/@]+:)([^@]+)(@)")


def mask_dsn(dsn: str) -> str:
    return _DSN_PASSWORD.sub(r"\1****\3", dsn)


def engine_options(dsn: str, db_config: DatabaseConfig) -> dict[str, Any]:
    """create_engine keyword arguments for the DSN's dialect."""
    options: dict[str, Any] = {"echo": db_config.echo, "pool_pre_ping": True}
    if dsn.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in dsn or dsn.rstrip("/") == "sqlite:":
            options["poolclass"] = StaticPool
    else:
        options.update(
            pool_size=db_config.pool_size,
            max_overflow=db_config.max_overflow,
            isolation_level="READ COMMITTED",
        )
    return options


def _configure_connections(engine: Engine) -> None:
    dialect = engine.dialect.name
    in_memory = engine.url.database in (None, "", ":memory:")

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            if dialect == "sqlite":
                cursor.execute("PRAGMA foreign_keys=ON")
                if not in_memory:
                    cursor.execute("PRAGMA journal_mode=WAL")
            elif dialect == "postgresql":
                cursor.execute("SET timezone TO 'UTC'")
        finally:
            cursor.close()


class DatabaseFactory:
    """Process-wide owner of the link store engine and session factory."""

    _instance: Optional["DatabaseFactory"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DatabaseFactory":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._engine = None
                    instance._sessions = None
                    instance._dsn = None
                    cls._instance = instance
        return cls._instance

    def initialize(self, dsn: Optional[str] = None) -> None:
        """Bind the engine once; later calls are no-ops until close()."""
        with self._lock:
            if self._engine is not None:
                if dsn and dsn != self._dsn:
                    logger.warning(
                        "Link store already bound to %s, ignoring %s", mask_dsn(self._dsn), mask_dsn(dsn)
                    )
                return

            target = dsn or config.database.dsn
            try:
                engine = create_engine(target, **engine_options(target, config.database))
            except SQLAlchemyError as e:
                raise DatabaseError(f"Cannot create engine: {e}", dsn=mask_dsn(target)) from e

            _configure_connections(engine)
            self._engine = engine
            self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
            self._dsn = target

        logger.info("Link store bound to %s", mask_dsn(target))

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.initialize()
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._sessions is None:
            self.initialize()
        return self._sessions

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Unit of work: commit on success, roll back and re-raise on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug("Rolled back unit of work after %s", type(e).__name__)
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("Link store health check failed: %s", e)
            return False
        return True

    def create_all_tables(self) -> list[str]:
        """Create missing link store tables and return the names created."""
        existing = set(inspect(self.engine).get_table_names())
        Base.metadata.create_all(bind=self.engine)
        created = [name for name in Base.metadata.tables if name not in existing]
        if created:
            logger.info("Created tables: %s", ", ".join(created))
        return created

    def close(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                logger.info("Link store connections closed")
            self._engine = None
            self._sessions = None
            self._dsn = None


_db_factory = DatabaseFactory()


def get_session():
    """Unit-of-work context manager on the shared factory."""
    return _db_factory.get_session()


def health_check() -> bool:
    return _db_factory.health_check()


def close_database() -> None:
    _db_factory.close()


def setup_database(dsn: Optional[str] = None) -> list[str]:
    """Bind the link store, create missing tables and verify connectivity."""
    _db_factory.initialize(dsn)
    created = _db_factory.create_all_tables()
    if not _db_factory.health_check():
        raise DatabaseError("Link store health check failed", dsn=mask_dsn(_db_factory._dsn))
    return created
