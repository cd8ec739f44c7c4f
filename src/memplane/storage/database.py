"""SQLite engine shared by entity tables and embedding stores.

This module provides:
- Database: Connection manager with WAL mode for concurrent access
- Optional sqlite-vec loading on every new connection
- write() with busy retry for serialized writes
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

    from memplane.config.models import DatabaseConfig

logger = structlog.get_logger()

T = TypeVar("T")

# Retry configuration for SQLite busy handling
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.1  # 100ms base
DEFAULT_RETRY_MAX_DELAY = 2.0  # 2s max
DEFAULT_BUSY_TIMEOUT_MS = 30000


def _is_database_locked_error(error: Exception) -> bool:
    """Check if error is a SQLite database locked error."""
    error_str = str(error).lower()
    return "database is locked" in error_str or "database is busy" in error_str


def _load_vec_extension(dbapi_conn: Any) -> bool:
    """Load sqlite-vec into a raw connection. False when unavailable."""
    try:
        import sqlite_vec
    except ImportError:
        return False
    try:
        dbapi_conn.enable_load_extension(True)
        sqlite_vec.load(dbapi_conn)
        dbapi_conn.enable_load_extension(False)
    except (AttributeError, sqlite3.Error) as e:
        # Interpreters built without extension loading lack enable_load_extension
        logger.debug("sqlite_vec_unavailable", error=str(e))
        return False
    return True


class Database:
    """SQLite connection manager with WAL mode for concurrent access.

    Includes retry logic with exponential backoff for handling
    SQLite busy timeouts during concurrent writes. When ``load_vector_extension``
    is set, sqlite-vec is loaded on each connection; whether that worked is
    reported by :attr:`vector_extension_loaded`.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        load_vector_extension: bool = True,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    ) -> None:
        self.db_path = db_path
        self._load_vector_extension = load_vector_extension
        self._busy_timeout_ms = busy_timeout_ms
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self.vector_extension_loaded = False
        self.engine = self._create_engine()

    @classmethod
    def from_config(
        cls,
        db_path: Path,
        config: DatabaseConfig,
        *,
        load_vector_extension: bool = True,
    ) -> Database:
        return cls(
            db_path,
            load_vector_extension=load_vector_extension,
            busy_timeout_ms=config.busy_timeout_ms,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay_sec,
        )

    def _create_engine(self) -> Engine:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        event.listen(engine, "connect", self._on_connect)
        return engine

    def _on_connect(self, dbapi_conn: Any, _connection_record: Any) -> None:
        _configure_pragmas(dbapi_conn, self._busy_timeout_ms)
        if self._load_vector_extension:
            self.vector_extension_loaded = _load_vec_extension(dbapi_conn)

    def create_all(self) -> None:
        """Create all tables from SQLModel metadata."""
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """ORM session for entity reads and writes."""
        with Session(self.engine) as session:
            yield session

    @contextmanager
    def connect(self) -> Generator[Connection, None, None]:
        """Core connection committed on successful exit."""
        with self.engine.begin() as conn:
            yield conn

    def write(
        self,
        fn: Callable[[Connection], T],
        max_retries: int | None = None,
    ) -> T:
        """Run ``fn`` in a write transaction, retrying while the file is locked.

        The transaction commits when ``fn`` returns and rolls back when it
        raises. Only "database is locked" errors are retried, with exponential
        backoff; everything else propagates on the first attempt.
        """
        retries = max_retries if max_retries is not None else self._max_retries

        for attempt in range(retries + 1):  # +1 for initial attempt
            try:
                with self.engine.begin() as conn:
                    return fn(conn)
            except OperationalError as e:
                if not (_is_database_locked_error(e) and attempt < retries):
                    raise
                delay = min(
                    self._retry_base_delay * (2**attempt),
                    self._retry_max_delay,
                )
                logger.warning(
                    "sqlite_busy_retry",
                    attempt=attempt + 1,
                    max_retries=retries,
                    delay_sec=delay,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def dispose(self) -> None:
        """Close pooled connections."""
        self.engine.dispose()


def _configure_pragmas(dbapi_conn: Any, busy_timeout_ms: int) -> None:
    """Configure SQLite for concurrent access and performance."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    cursor.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
    cursor.close()
