"""Cached reference data (people, organizational units) and its metadata."""

import json
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from fieldsync.storage.database import (
    Database,
    from_db_timestamp,
    to_db_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class CacheCategory(Enum):
    ORGANIZATIONS = "organizations"
    PEOPLE = "people"


class EntitySyncStatus(Enum):
    """Sync tag of a cached row; separate from queue status."""

    CACHED = "cached"
    PENDING = "pending"
    SYNCED = "synced"


@dataclass
class CacheMetadata:
    category: str
    record_count: int
    last_updated: datetime
    created_at: datetime

    def age(self, now: datetime | None = None):
        return (now or utc_now()) - self.last_updated


@dataclass
class CachedEntity:
    category: str
    natural_key: str
    scope_id: str | None
    data: dict[str, Any]
    sync_status: EntitySyncStatus
    updated_at: datetime


class CacheStore:
    """SQLite storage for downloaded reference records."""

    def __init__(self, database: Database):
        self.db = database

    def upsert_entities(
        self,
        category: CacheCategory,
        records: Iterable[tuple[str, str | None, dict[str, Any]]],
        *,
        now: datetime | None = None,
    ) -> int:
        """Insert or overwrite ``(natural_key, scope_id, data)`` records.

        Rows tagged ``pending`` keep the tag so a queued local edit is not
        reported as synced by a refresh.
        """
        timestamp = to_db_timestamp(now or utc_now())
        rows = [
            (
                category.value,
                str(key),
                str(scope_id) if scope_id is not None else None,
                json.dumps(data),
                EntitySyncStatus.CACHED.value,
                timestamp,
            )
            for key, scope_id, data in records
        ]
        if not rows:
            return 0

        def _upsert(conn: sqlite3.Connection) -> int:
            conn.executemany(
                """
                INSERT INTO cached_entities (
                    category, natural_key, scope_id, data, sync_status, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (category, natural_key) DO UPDATE SET
                    scope_id = excluded.scope_id,
                    data = excluded.data,
                    updated_at = excluded.updated_at,
                    sync_status = CASE
                        WHEN cached_entities.sync_status = 'pending' THEN 'pending'
                        ELSE excluded.sync_status
                    END
                """,
                rows,
            )
            return len(rows)

        return self.db.run_in_transaction(_upsert)

    def set_metadata(
        self,
        category: CacheCategory,
        record_count: int,
        *,
        now: datetime | None = None,
    ) -> None:
        timestamp = to_db_timestamp(now or utc_now())

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO cache_metadata (category, record_count, last_updated, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (category) DO UPDATE SET
                    record_count = excluded.record_count,
                    last_updated = excluded.last_updated
                """,
                (category.value, record_count, timestamp, timestamp),
            )

        self.db.run_in_transaction(_upsert)

    def get_metadata(self, category: CacheCategory | str) -> CacheMetadata | None:
        name = category.value if isinstance(category, CacheCategory) else category

        def _select(conn: sqlite3.Connection) -> CacheMetadata | None:
            row = conn.execute(
                "SELECT * FROM cache_metadata WHERE category = ?",
                (name,),
            ).fetchone()
            if row is None:
                return None
            return CacheMetadata(
                category=row["category"],
                record_count=row["record_count"],
                last_updated=from_db_timestamp(row["last_updated"]),
                created_at=from_db_timestamp(row["created_at"]),
            )

        return self.db.read(_select)

    def count_entities(
        self,
        category: CacheCategory,
        scope_id: str | None = None,
    ) -> int:
        def _select(conn: sqlite3.Connection) -> int:
            if scope_id is None:
                return conn.execute(
                    "SELECT COUNT(*) FROM cached_entities WHERE category = ?",
                    (category.value,),
                ).fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM cached_entities WHERE category = ? AND scope_id = ?",
                (category.value, str(scope_id)),
            ).fetchone()[0]

        return self.db.read(_select)

    def counts_by_scope(self, category: CacheCategory) -> dict[str, int]:
        def _select(conn: sqlite3.Connection) -> dict[str, int]:
            rows = conn.execute(
                """
                SELECT scope_id, COUNT(*) FROM cached_entities
                WHERE category = ?
                GROUP BY scope_id
                """,
                (category.value,),
            ).fetchall()
            return {str(scope): count for scope, count in rows}

        return self.db.read(_select)

    def get_entities(
        self,
        category: CacheCategory,
        scope_id: str | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[CachedEntity]:
        clauses = ["category = ?"]
        params: list[Any] = [category.value]
        if scope_id is not None:
            clauses.append("scope_id = ?")
            params.append(str(scope_id))
        if search:
            clauses.append("(natural_key LIKE ? OR data LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        query = (
            f"SELECT * FROM cached_entities WHERE {' AND '.join(clauses)} "
            "ORDER BY natural_key"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        def _select(conn: sqlite3.Connection) -> list[CachedEntity]:
            return [self._row_to_entity(row) for row in conn.execute(query, params)]

        return self.db.read(_select)

    def get_entity(self, category: CacheCategory, natural_key: str) -> CachedEntity | None:
        def _select(conn: sqlite3.Connection) -> CachedEntity | None:
            row = conn.execute(
                "SELECT * FROM cached_entities WHERE category = ? AND natural_key = ?",
                (category.value, str(natural_key)),
            ).fetchone()
            return self._row_to_entity(row) if row else None

        return self.db.read(_select)

    def scope_ids(self) -> list[str]:
        """Natural keys of the cached organizational units."""
        return [
            entity.natural_key
            for entity in self.get_entities(CacheCategory.ORGANIZATIONS)
        ]

    def set_sync_status(
        self,
        category: CacheCategory,
        natural_key: str,
        status: EntitySyncStatus,
    ) -> bool:
        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE cached_entities SET sync_status = ?
                WHERE category = ? AND natural_key = ?
                """,
                (status.value, category.value, str(natural_key)),
            ).rowcount

        return self.db.run_in_transaction(_update) > 0

    def clear(self) -> int:
        """Remove all cached entities and metadata."""

        def _delete(conn: sqlite3.Connection) -> int:
            count = conn.execute("DELETE FROM cached_entities").rowcount
            conn.execute("DELETE FROM cache_metadata")
            return count

        count = self.db.run_in_transaction(_delete)
        logger.info("Cleared %s cached records", count)
        return count

    def _row_to_entity(self, row: sqlite3.Row) -> CachedEntity:
        try:
            data = json.loads(row["data"])
        except json.JSONDecodeError as e:
            logger.warning(
                "Failed to deserialize cached %s %s: %s",
                row["category"],
                row["natural_key"],
                e,
            )
            data = {}
        return CachedEntity(
            category=row["category"],
            natural_key=row["natural_key"],
            scope_id=row["scope_id"],
            data=data,
            sync_status=EntitySyncStatus(row["sync_status"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )
