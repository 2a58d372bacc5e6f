"""Persistent queue of operations awaiting upload."""

import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from fieldsync.queue.models import (
    NATURAL_KEY_FIELD,
    OperationStatus,
    OperationType,
    QueuedOperation,
)
from fieldsync.storage.database import (
    Database,
    from_db_timestamp,
    to_db_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

DEQUEUE_ORDER = "ORDER BY priority DESC, created_at ASC, id ASC"


def _placeholders(values: list[Any]) -> str:
    return ",".join("?" * len(values))


class QueueStore:
    """Transactional storage for queued operations.

    ``dequeue_batch`` selects and marks rows inside a single ``BEGIN
    IMMEDIATE`` transaction, so two concurrent callers never receive the
    same operation.
    """

    def __init__(self, database: Database, default_max_attempts: int = 3):
        self.db = database
        self.default_max_attempts = default_max_attempts

    def enqueue(
        self,
        operation_type: OperationType,
        payload: dict[str, Any] | str,
        priority: int | None = None,
        *,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
        now: datetime | None = None,
    ) -> int:
        """Insert a pending operation and return its id."""
        now = now or utc_now()
        payload_text = payload if isinstance(payload, str) else json.dumps(payload)
        priority = operation_type.priority if priority is None else priority
        max_attempts = max_attempts or self.default_max_attempts
        timestamp = to_db_timestamp(now)

        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO queued_operations (
                    operation_type, payload, priority, created_at, scheduled_at,
                    attempts, max_attempts, status, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    operation_type.value,
                    payload_text,
                    priority,
                    timestamp,
                    to_db_timestamp(scheduled_at or now),
                    max_attempts,
                    OperationStatus.PENDING.value,
                    timestamp,
                ),
            )
            return cursor.lastrowid

        operation_id = self.db.run_in_transaction(_insert)
        logger.debug(
            "Enqueued %s operation %s (priority %s)",
            operation_type.value,
            operation_id,
            priority,
        )
        return operation_id

    def dequeue_batch(
        self,
        limit: int,
        operation_type: OperationType | None = None,
        exclude_ids: Iterable[int] = (),
        *,
        now: datetime | None = None,
    ) -> list[QueuedOperation]:
        """Atomically take up to ``limit`` eligible pending rows and mark them syncing."""
        if limit <= 0:
            return []
        now = now or utc_now()
        timestamp = to_db_timestamp(now)
        excluded = list(exclude_ids)

        def _take(conn: sqlite3.Connection) -> list[QueuedOperation]:
            clauses = ["status = ?", "scheduled_at <= ?"]
            params: list[Any] = [OperationStatus.PENDING.value, timestamp]
            if operation_type is not None:
                clauses.append("operation_type = ?")
                params.append(operation_type.value)
            if excluded:
                clauses.append(f"id NOT IN ({_placeholders(excluded)})")
                params.extend(excluded)
            params.append(limit)

            rows = conn.execute(
                f"""
                SELECT * FROM queued_operations
                WHERE {" AND ".join(clauses)}
                {DEQUEUE_ORDER}
                LIMIT ?
                """,
                params,
            ).fetchall()
            if not rows:
                return []

            ids = [row["id"] for row in rows]
            conn.execute(
                f"""
                UPDATE queued_operations
                SET status = ?, updated_at = ?
                WHERE id IN ({_placeholders(ids)})
                """,
                [OperationStatus.SYNCING.value, timestamp, *ids],
            )
            items = [self._row_to_item(row) for row in rows]
            for item in items:
                item.status = OperationStatus.SYNCING
                item.updated_at = now
            return items

        items = self.db.run_in_transaction(_take)
        if items:
            logger.debug("Dequeued %s operations", len(items))
        return items

    def mark_success(self, operation_id: int, *, now: datetime | None = None) -> bool:
        """Mark an operation synced. Returns False if it no longer exists."""
        timestamp = to_db_timestamp(now or utc_now())

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE queued_operations
                SET status = ?, synced_at = ?, updated_at = ?, last_error = NULL
                WHERE id = ? AND status != ?
                """,
                (
                    OperationStatus.SYNCED.value,
                    timestamp,
                    timestamp,
                    operation_id,
                    OperationStatus.CANCELLED.value,
                ),
            ).rowcount

        updated = self.db.run_in_transaction(_update) > 0
        if not updated:
            logger.warning("Cannot mark operation %s synced: not found", operation_id)
        return updated

    def mark_failed(
        self,
        operation_id: int,
        error: str,
        *,
        now: datetime | None = None,
    ) -> OperationStatus | None:
        """Record a failed attempt.

        The attempt counter never exceeds ``max_attempts``. Reaching it makes
        the failure terminal; otherwise the operation is pending again with
        no added delay.
        """
        timestamp = to_db_timestamp(now or utc_now())

        def _update(conn: sqlite3.Connection) -> OperationStatus | None:
            row = conn.execute(
                "SELECT attempts, max_attempts, status FROM queued_operations WHERE id = ?",
                (operation_id,),
            ).fetchone()
            if row is None or row["status"] == OperationStatus.CANCELLED.value:
                return None

            attempts = min(row["attempts"] + 1, row["max_attempts"])
            status = (
                OperationStatus.FAILED
                if attempts >= row["max_attempts"]
                else OperationStatus.PENDING
            )
            conn.execute(
                """
                UPDATE queued_operations
                SET attempts = ?, status = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (attempts, status.value, error, timestamp, operation_id),
            )
            return status

        status = self.db.run_in_transaction(_update)
        if status == OperationStatus.FAILED:
            logger.warning(
                "Operation %s failed permanently after max attempts: %s",
                operation_id,
                error,
            )
        elif status is not None:
            logger.info("Operation %s failed, will retry: %s", operation_id, error)
        return status

    def release(
        self,
        operation_ids: Iterable[int],
        *,
        now: datetime | None = None,
    ) -> int:
        """Return syncing operations to pending without counting an attempt."""
        ids = list(operation_ids)
        if not ids:
            return 0
        timestamp = to_db_timestamp(now or utc_now())

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                f"""
                UPDATE queued_operations
                SET status = ?, updated_at = ?
                WHERE id IN ({_placeholders(ids)}) AND status = ?
                """,
                [
                    OperationStatus.PENDING.value,
                    timestamp,
                    *ids,
                    OperationStatus.SYNCING.value,
                ],
            ).rowcount

        count = self.db.run_in_transaction(_update)
        if count:
            logger.debug("Released %s operations back to pending", count)
        return count

    def _retryable_clause(self, cutoff: str) -> tuple[str, list[Any]]:
        return (
            "((status = ? AND attempts < max_attempts)"
            " OR (status = ? AND updated_at < ?))",
            [OperationStatus.FAILED.value, OperationStatus.SYNCING.value, cutoff],
        )

    def list_retryable(
        self,
        stale_after: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[QueuedOperation]:
        """Failed rows with attempts left, plus syncing rows older than ``stale_after``."""
        cutoff = to_db_timestamp((now or utc_now()) - stale_after)
        clause, params = self._retryable_clause(cutoff)

        def _select(conn: sqlite3.Connection) -> list[QueuedOperation]:
            rows = conn.execute(
                f"SELECT * FROM queued_operations WHERE {clause} {DEQUEUE_ORDER}",
                params,
            ).fetchall()
            return [self._row_to_item(row) for row in rows]

        return self.db.read(_select)

    def claim(
        self,
        operation_ids: Iterable[int],
        stale_after: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[QueuedOperation]:
        """Mark listed operations syncing if they are still retryable."""
        ids = list(operation_ids)
        if not ids:
            return []
        now = now or utc_now()
        timestamp = to_db_timestamp(now)
        clause, params = self._retryable_clause(to_db_timestamp(now - stale_after))

        def _take(conn: sqlite3.Connection) -> list[QueuedOperation]:
            rows = conn.execute(
                f"""
                SELECT * FROM queued_operations
                WHERE id IN ({_placeholders(ids)}) AND {clause}
                {DEQUEUE_ORDER}
                """,
                [*ids, *params],
            ).fetchall()
            if not rows:
                return []
            claimed = [row["id"] for row in rows]
            conn.execute(
                f"""
                UPDATE queued_operations
                SET status = ?, updated_at = ?
                WHERE id IN ({_placeholders(claimed)})
                """,
                [OperationStatus.SYNCING.value, timestamp, *claimed],
            )
            items = [self._row_to_item(row) for row in rows]
            for item in items:
                item.status = OperationStatus.SYNCING
                item.updated_at = now
            return items

        return self.db.run_in_transaction(_take)

    def reclaim_stale(
        self,
        stale_after: timedelta,
        *,
        now: datetime | None = None,
    ) -> int:
        """Return syncing rows untouched for longer than ``stale_after`` to pending."""
        now = now or utc_now()
        cutoff = to_db_timestamp(now - stale_after)

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE queued_operations
                SET status = ?, updated_at = ?
                WHERE status = ? AND updated_at < ?
                """,
                (
                    OperationStatus.PENDING.value,
                    to_db_timestamp(now),
                    OperationStatus.SYNCING.value,
                    cutoff,
                ),
            ).rowcount

        count = self.db.run_in_transaction(_update)
        if count > 0:
            logger.info("Reclaimed %s stale syncing operations", count)
        return count

    def reset_stuck_syncing(self) -> int:
        """Reset every syncing row to pending.

        Only safe at startup, before any cycle runs: a row left in syncing
        then belongs to a process that has exited.
        """
        timestamp = to_db_timestamp(utc_now())

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "UPDATE queued_operations SET status = ?, updated_at = ? WHERE status = ?",
                (
                    OperationStatus.PENDING.value,
                    timestamp,
                    OperationStatus.SYNCING.value,
                ),
            ).rowcount

        count = self.db.run_in_transaction(_update)
        if count > 0:
            logger.info("Reset %s stuck syncing operations to pending", count)
        return count

    def reset_failed(self, operation_id: int) -> bool:
        """Give a terminally failed operation a fresh set of attempts."""
        timestamp = to_db_timestamp(utc_now())

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE queued_operations
                SET status = ?, attempts = 0, last_error = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    OperationStatus.PENDING.value,
                    timestamp,
                    operation_id,
                    OperationStatus.FAILED.value,
                ),
            ).rowcount

        reset = self.db.run_in_transaction(_update) > 0
        if reset:
            logger.info("Reset failed operation %s to pending", operation_id)
        return reset

    def cancel(self, operation_id: int) -> bool:
        """Cancel a pending operation so it is never uploaded."""
        timestamp = to_db_timestamp(utc_now())

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE queued_operations
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    OperationStatus.CANCELLED.value,
                    timestamp,
                    operation_id,
                    OperationStatus.PENDING.value,
                ),
            ).rowcount

        cancelled = self.db.run_in_transaction(_update) > 0
        if cancelled:
            logger.info("Cancelled operation %s", operation_id)
        return cancelled

    def cleanup(self, older_than_days: int, *, now: datetime | None = None) -> int:
        """Delete synced and cancelled operations past the retention period.

        Pending and failed operations are never removed.
        """
        cutoff = to_db_timestamp((now or utc_now()) - timedelta(days=older_than_days))

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                DELETE FROM queued_operations
                WHERE (status = ? AND synced_at IS NOT NULL AND synced_at < ?)
                   OR (status = ? AND updated_at < ?)
                """,
                (
                    OperationStatus.SYNCED.value,
                    cutoff,
                    OperationStatus.CANCELLED.value,
                    cutoff,
                ),
            ).rowcount

        count = self.db.run_in_transaction(_delete)
        if count > 0:
            logger.info("Cleaned up %s completed operations", count)
        return count

    def get(self, operation_id: int) -> QueuedOperation | None:
        """Get a specific operation by ID."""

        def _select(conn: sqlite3.Connection) -> QueuedOperation | None:
            row = conn.execute(
                "SELECT * FROM queued_operations WHERE id = ?",
                (operation_id,),
            ).fetchone()
            return self._row_to_item(row) if row else None

        return self.db.read(_select)

    def list_operations(
        self,
        status: OperationStatus | None = None,
        operation_type: OperationType | None = None,
        limit: int = 100,
    ) -> list[QueuedOperation]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if operation_type is not None:
            clauses.append("operation_type = ?")
            params.append(operation_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        def _select(conn: sqlite3.Connection) -> list[QueuedOperation]:
            rows = conn.execute(
                f"SELECT * FROM queued_operations {where} {DEQUEUE_ORDER} LIMIT ?",
                params,
            ).fetchall()
            return [self._row_to_item(row) for row in rows]

        return self.db.read(_select)

    def has_unsynced(
        self,
        operation_type: OperationType,
        natural_key: str,
        *,
        exclude_id: int | None = None,
    ) -> bool:
        """Whether a pending or syncing operation of this type targets ``natural_key``."""

        def _select(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                f"""
                SELECT 1 FROM queued_operations
                WHERE operation_type = ?
                  AND status IN (?, ?)
                  AND id != ?
                  AND CASE WHEN json_valid(payload)
                      THEN CAST(json_extract(payload, '$.{NATURAL_KEY_FIELD}') AS TEXT)
                  END = ?
                LIMIT 1
                """,
                (
                    operation_type.value,
                    OperationStatus.PENDING.value,
                    OperationStatus.SYNCING.value,
                    -1 if exclude_id is None else exclude_id,
                    natural_key,
                ),
            ).fetchone()
            return row is not None

        return self.db.read(_select)

    def count_by_status(self) -> dict[OperationStatus, int]:
        def _select(conn: sqlite3.Connection) -> dict[OperationStatus, int]:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM queued_operations GROUP BY status",
            ).fetchall()
            return {OperationStatus(status): count for status, count in rows}

        return self.db.read(_select)

    def pending_counts_by_type(self) -> dict[OperationType, int]:
        def _select(conn: sqlite3.Connection) -> dict[OperationType, int]:
            rows = conn.execute(
                """
                SELECT operation_type, COUNT(*) FROM queued_operations
                WHERE status = ?
                GROUP BY operation_type
                """,
                (OperationStatus.PENDING.value,),
            ).fetchall()
            counts = dict.fromkeys(OperationType, 0)
            for operation_type, count in rows:
                counts[OperationType(operation_type)] = count
            return counts

        return self.db.read(_select)

    def failed_retryable_count(self) -> int:
        def _select(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                SELECT COUNT(*) FROM queued_operations
                WHERE status = ? AND attempts < max_attempts
                """,
                (OperationStatus.FAILED.value,),
            ).fetchone()[0]

        return self.db.read(_select)

    def last_updated(self) -> datetime | None:
        def _select(conn: sqlite3.Connection) -> str | None:
            return conn.execute(
                "SELECT MAX(updated_at) FROM queued_operations",
            ).fetchone()[0]

        return from_db_timestamp(self.db.read(_select))

    def _row_to_item(self, row: sqlite3.Row) -> QueuedOperation:
        """Convert a database row to a QueuedOperation."""
        return QueuedOperation(
            id=row["id"],
            operation_type=OperationType(row["operation_type"]),
            payload=row["payload"],
            priority=row["priority"],
            created_at=from_db_timestamp(row["created_at"]),
            scheduled_at=from_db_timestamp(row["scheduled_at"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_error=row["last_error"],
            status=OperationStatus(row["status"]),
            synced_at=from_db_timestamp(row["synced_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )
