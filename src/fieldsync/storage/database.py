"""SQLite database access with a bounded connection pool."""

import logging
import queue
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from fieldsync.config import FieldSyncConfig
from fieldsync.error_handling import StorageContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS queued_operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    synced_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_operations_dequeue
    ON queued_operations (status, priority DESC, created_at, id);

CREATE INDEX IF NOT EXISTS idx_operations_type
    ON queued_operations (operation_type, status);

CREATE TABLE IF NOT EXISTS cache_metadata (
    category TEXT PRIMARY KEY,
    record_count INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cached_entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    natural_key TEXT NOT NULL,
    scope_id TEXT,
    data TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'cached',
    updated_at TEXT NOT NULL,
    UNIQUE (category, natural_key)
);

CREATE INDEX IF NOT EXISTS idx_entities_scope
    ON cached_entities (category, scope_id);

CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation TEXT NOT NULL,
    status TEXT NOT NULL,
    records_count INTEGER NOT NULL DEFAULT 0,
    message TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS error_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    message TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL
);
"""

EXPECTED_TABLES = {
    "queued_operations",
    "cache_metadata",
    "cached_entities",
    "sync_logs",
    "error_logs",
}


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_db_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 text, so string order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _is_busy_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class Database:
    """Owns the SQLite file and hands out pooled connections.

    Connections run in autocommit mode and every unit of work is wrapped in
    an explicit transaction by ``run_in_transaction``. Busy/locked errors are
    retried with exponential backoff; once the retries are exhausted a
    ``StorageContentionError`` is raised.
    """

    def __init__(self, config: FieldSyncConfig, db_path: Path | None = None):
        self.config = config
        self.db_path = db_path or config.database_path
        self.pool_size = config.store_pool_size
        self._pool: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue(
            maxsize=self.pool_size,
        )
        self._pool_lock = threading.Lock()
        self._created = 0
        self._closed = False
        self._init_database()

    def _init_database(self) -> None:
        """Create the database file and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._acquire()
        try:
            conn.executescript(SCHEMA)
        finally:
            self._release(conn)
        logger.debug("Initialized database at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.config.store_busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            msg = "Database has been closed"
            raise RuntimeError(msg)
        try:
            return self._pool.get_nowait()
        except queue.Empty:
            pass

        with self._pool_lock:
            if self._created < self.pool_size:
                self._created += 1
                try:
                    return self._connect()
                except Exception:
                    self._created -= 1
                    raise

        try:
            return self._pool.get(timeout=self.config.store_busy_timeout)
        except queue.Empty as e:
            msg = "Timed out waiting for a free database connection"
            raise StorageContentionError(msg, original_error=e) from e

    def _release(self, conn: sqlite3.Connection) -> None:
        if self._closed:
            conn.close()
            return
        self._pool.put_nowait(conn)

    @contextmanager
    def _get_connection(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a pooled connection wrapped in a transaction."""
        conn = self._acquire()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            self._release(conn)

    def run_in_transaction(
        self,
        fn: Callable[[sqlite3.Connection], T],
        *,
        immediate: bool = True,
    ) -> T:
        """Run ``fn`` inside one transaction, retrying on lock contention.

        ``immediate`` takes the write lock up front, which is what makes a
        select-then-update sequence atomic against other writers.
        """
        delay = self.config.store_busy_base_delay
        retries = self.config.store_busy_retries

        attempt = 0
        while True:
            try:
                with self._get_connection(immediate=immediate) as conn:
                    return fn(conn)
            except sqlite3.OperationalError as e:
                if not _is_busy_error(e):
                    raise
                if attempt >= retries:
                    msg = f"Database stayed locked after {retries} retries"
                    raise StorageContentionError(
                        msg,
                        details=str(e),
                        original_error=e,
                    ) from e
                attempt += 1
                logger.debug(
                    "Database busy (attempt %s/%s), retrying in %.3fs",
                    attempt,
                    retries,
                    delay,
                )
                time.sleep(delay)
                delay *= 2

    def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run a read-only unit of work."""
        return self.run_in_transaction(fn, immediate=False)

    def check_database_health(self) -> dict[str, Any]:
        """Check database health and return diagnostic information."""
        health_info: dict[str, Any] = {
            "database_exists": self.db_path.exists(),
            "database_readable": False,
            "tables_present": [],
            "missing_tables": [],
            "integrity_check": False,
            "size_bytes": 0,
        }

        if not health_info["database_exists"]:
            return health_info

        def _inspect(conn: sqlite3.Connection) -> None:
            health_info["database_readable"] = True
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'",
            ).fetchall()
            tables = {row[0] for row in rows}
            health_info["tables_present"] = sorted(tables & EXPECTED_TABLES)
            health_info["missing_tables"] = sorted(EXPECTED_TABLES - tables)
            result = conn.execute("PRAGMA integrity_check").fetchone()
            health_info["integrity_check"] = result[0] == "ok" if result else False

        try:
            self.read(_inspect)
            health_info["size_bytes"] = self.size_bytes()
        except (sqlite3.Error, StorageContentionError) as e:
            health_info["error"] = str(e)
            logger.exception("Database health check failed")

        return health_info

    def size_bytes(self) -> int:
        """Approximate on-disk size including the WAL file."""
        total = 0
        for path in (self.db_path, self.db_path.with_name(self.db_path.name + "-wal")):
            if path.exists():
                total += path.stat().st_size
        return total

    def close(self) -> None:
        """Close every pooled connection."""
        self._closed = True
        while True:
            try:
                conn = self._pool.get_nowait()
            except queue.Empty:
                break
            conn.close()
        logger.debug("Closed database %s", self.db_path)
