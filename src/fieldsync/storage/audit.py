"""Sync and error audit trail."""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from fieldsync.storage.database import (
    Database,
    from_db_timestamp,
    to_db_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncLogEntry:
    id: int
    operation: str
    status: str
    records_count: int
    message: str | None
    created_at: datetime


class AuditLog:
    """Writes ``sync_logs`` and ``error_logs`` rows.

    Audit writes never raise: a failure to record history must not fail
    the operation being recorded.
    """

    def __init__(self, database: Database):
        self.db = database

    def log_sync(
        self,
        operation: str,
        status: str,
        records_count: int = 0,
        message: str | None = None,
    ) -> None:
        timestamp = to_db_timestamp(utc_now())

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO sync_logs (operation, status, records_count, message, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (operation, status, records_count, message, timestamp),
            )

        try:
            self.db.run_in_transaction(_insert)
        except Exception:
            logger.exception("Failed to write sync log entry for %s", operation)

    def log_error(
        self,
        source: str,
        message: str,
        details: str | None = None,
    ) -> None:
        timestamp = to_db_timestamp(utc_now())

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO error_logs (source, message, details, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (source, message, details, timestamp),
            )

        try:
            self.db.run_in_transaction(_insert)
        except Exception:
            logger.exception("Failed to write error log entry for %s", source)

    def recent_sync_logs(self, limit: int = 20) -> list[SyncLogEntry]:
        def _select(conn: sqlite3.Connection) -> list[SyncLogEntry]:
            rows = conn.execute(
                "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [
                SyncLogEntry(
                    id=row["id"],
                    operation=row["operation"],
                    status=row["status"],
                    records_count=row["records_count"],
                    message=row["message"],
                    created_at=from_db_timestamp(row["created_at"]),
                )
                for row in rows
            ]

        return self.db.read(_select)
