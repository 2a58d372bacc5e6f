"""Reference data caching for offline operation."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from fieldsync.config import FieldSyncConfig
from fieldsync.core import events
from fieldsync.core.events import (
    CacheUpdated,
    ContinuityChanged,
    EventBus,
    RefreshNeeded,
)
from fieldsync.error_handling import FieldSyncError, TransientNetworkError
from fieldsync.services.transport import SyncTransport
from fieldsync.storage.audit import AuditLog
from fieldsync.storage.cache_store import (
    CacheCategory,
    CachedEntity,
    CacheStore,
    EntitySyncStatus,
)
from fieldsync.storage.database import Database

logger = logging.getLogger(__name__)

IN_PROGRESS_MESSAGE = "Cache operation already in progress"
OFFLINE_MESSAGE = "No network connectivity available"


@dataclass
class CacheResult:
    success: bool
    message: str
    category: str | None = None
    records_cached: int = 0
    errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class RefreshResult:
    success: bool
    message: str
    was_stale: bool = True
    organizations: CacheResult | None = None
    people: CacheResult | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class CategoryStatistics:
    category: str
    record_count: int = 0
    last_updated: datetime | None = None
    age_hours: float | None = None
    is_stale: bool = True


@dataclass
class CacheStatistics:
    categories: dict[str, CategoryStatistics] = field(default_factory=dict)
    people_by_scope: dict[str, int] = field(default_factory=dict)
    continuity_ready: bool = False
    database_size_bytes: int = 0

    @property
    def is_stale(self) -> bool:
        return any(stats.is_stale for stats in self.categories.values())


def _category(value: CacheCategory | str) -> CacheCategory:
    return value if isinstance(value, CacheCategory) else CacheCategory(value)


class CacheManager:
    """Downloads reference data and decides whether it can be trusted offline.

    Data is *stale* once it is older than ``cache_expiry_hours`` and should
    be refreshed. Offline continuity is a stricter check: every required
    category must hold records and the oldest of them must be within
    ``continuity_window_days``.
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        store: CacheStore,
        transport: SyncTransport,
        bus: EventBus,
        audit: AuditLog,
        database: Database | None = None,
    ):
        self.config = config
        self.store = store
        self.transport = transport
        self.bus = bus
        self.audit = audit
        self.database = database

        self.expiry = timedelta(hours=config.cache_expiry_hours)
        self.continuity_window = timedelta(days=config.continuity_window_days)

        self._lock = asyncio.Lock()
        self._continuity: bool | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._check_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    # Staleness and continuity

    def is_stale(
        self,
        category: CacheCategory | str = CacheCategory.PEOPLE,
        now: datetime | None = None,
    ) -> bool:
        """True if there is no metadata or its age exceeds the expiry."""
        metadata = self.store.get_metadata(category)
        if metadata is None:
            return True
        return metadata.age(now) > self.expiry

    def stale_categories(self, now: datetime | None = None) -> list[str]:
        return [
            name for name in self.config.required_categories if self.is_stale(name, now)
        ]

    def is_offline_continuity_ready(self, now: datetime | None = None) -> bool:
        """Whether cached data is complete and recent enough to keep working offline.

        Publishes a ContinuityChanged event whenever the answer differs from
        the previous evaluation.
        """
        now = now or datetime.now(UTC)
        ready = True
        oldest: datetime | None = None

        for name in self.config.required_categories:
            metadata = self.store.get_metadata(name)
            if metadata is None or metadata.record_count <= 0:
                ready = False
                break
            if oldest is None or metadata.last_updated < oldest:
                oldest = metadata.last_updated

        if ready and oldest is not None:
            ready = now - oldest <= self.continuity_window

        if ready != self._continuity:
            previous = self._continuity
            self._continuity = ready
            logger.info("Offline continuity %s", "ready" if ready else "not ready")
            self.bus.publish(
                events.CONTINUITY_CHANGED,
                ContinuityChanged(ready=ready, previous=previous, timestamp=now),
            )
        return ready

    # Downloads

    async def cache_organizations(self) -> CacheResult:
        """Download and store the organizational unit list."""
        if self._lock.locked():
            return CacheResult(False, IN_PROGRESS_MESSAGE, CacheCategory.ORGANIZATIONS.value)
        async with self._lock:
            return await self._cache_organizations()

    async def cache_people(self, scope_ids: list[str] | None = None) -> CacheResult:
        """Download and store people for each organizational unit."""
        if self._lock.locked():
            return CacheResult(False, IN_PROGRESS_MESSAGE, CacheCategory.PEOPLE.value)
        async with self._lock:
            return await self._cache_people(await self._resolve_scopes(scope_ids))

    async def refresh(self, scope_ids: list[str] | None = None) -> RefreshResult:
        """Refresh organizations, then people for the resolved scopes."""
        if self._lock.locked():
            return RefreshResult(False, IN_PROGRESS_MESSAGE)
        async with self._lock:
            return await self._refresh(scope_ids)

    async def refresh_if_stale(self, now: datetime | None = None) -> RefreshResult:
        """Refresh only when a required category is stale; no network I/O otherwise."""
        stale = await asyncio.to_thread(self.stale_categories, now)
        if not stale:
            return RefreshResult(True, "Cache is fresh", was_stale=False)
        logger.info("Cached data is stale (%s), refreshing", ", ".join(stale))
        return await self.refresh()

    async def _refresh(self, scope_ids: list[str] | None) -> RefreshResult:
        if not self.transport.is_online:
            return RefreshResult(False, OFFLINE_MESSAGE)

        organizations = await self._cache_organizations()
        people = await self._cache_people(await self._resolve_scopes(scope_ids))
        errors = [*organizations.errors, *people.errors]
        success = organizations.success and people.success
        message = (
            "Reference data refreshed"
            if success
            else f"Reference data refresh completed with {len(errors)} errors"
        )

        await asyncio.to_thread(
            self.audit.log_sync,
            "cache_refresh",
            "completed" if success else "partial",
            organizations.records_cached + people.records_cached,
            message,
        )
        return RefreshResult(
            success=success,
            message=message,
            was_stale=True,
            organizations=organizations,
            people=people,
            errors=errors,
        )

    async def _resolve_scopes(self, scope_ids: list[str] | None) -> list[str]:
        if scope_ids:
            return [str(scope) for scope in scope_ids]
        if self.config.scope_ids:
            return list(self.config.scope_ids)
        return await asyncio.to_thread(self.store.scope_ids)

    async def _cache_organizations(self) -> CacheResult:
        category = CacheCategory.ORGANIZATIONS
        if not self.transport.is_online:
            return CacheResult(False, OFFLINE_MESSAGE, category.value)

        try:
            records = await self.transport.download_organizations()
        except FieldSyncError as e:
            logger.warning("Failed to download organizations: %s", e.message)
            await asyncio.to_thread(self.audit.log_error, "cache", e.message, e.details)
            return CacheResult(
                False,
                f"Failed to cache organizations: {e.message}",
                category.value,
                errors=[e.message],
            )

        rows = [
            (str(record["id"]), None, record)
            for record in records
            if record.get("id") is not None
        ]
        cached = await asyncio.to_thread(self.store.upsert_entities, category, rows)
        total = await asyncio.to_thread(self.store.count_entities, category)
        await asyncio.to_thread(self.store.set_metadata, category, total)

        logger.info("Cached %s organizations", cached)
        self.bus.publish(
            events.CACHE_UPDATED,
            CacheUpdated(category.value, total, datetime.now(UTC)),
        )
        return CacheResult(True, f"Cached {cached} organizations", category.value, cached)

    async def _cache_people(self, scope_ids: list[str]) -> CacheResult:
        category = CacheCategory.PEOPLE
        if not self.transport.is_online:
            return CacheResult(False, OFFLINE_MESSAGE, category.value)
        if not scope_ids:
            return CacheResult(
                False,
                "No organizational units available to cache people for",
                category.value,
            )

        cached = 0
        errors: list[str] = []
        for scope_id in scope_ids:
            try:
                records = await self.transport.download_reference_data(scope_id)
            except TransientNetworkError as e:
                errors.append(f"{scope_id}: {e.message}")
                break
            except FieldSyncError as e:
                logger.warning("Failed to download people for %s: %s", scope_id, e.message)
                errors.append(f"{scope_id}: {e.message}")
                continue

            rows = [
                (str(record["roll_number"]), scope_id, record)
                for record in records
                if record.get("roll_number")
            ]
            cached += await asyncio.to_thread(self.store.upsert_entities, category, rows)

        if cached or len(errors) < len(scope_ids):
            total = await asyncio.to_thread(self.store.count_entities, category)
            await asyncio.to_thread(self.store.set_metadata, category, total)
            self.bus.publish(
                events.CACHE_UPDATED,
                CacheUpdated(category.value, total, datetime.now(UTC)),
            )

        for error in errors:
            await asyncio.to_thread(self.audit.log_error, "cache", error)

        self.is_offline_continuity_ready()

        if errors:
            return CacheResult(
                False,
                f"Cached {cached} people with {len(errors)} errors",
                category.value,
                cached,
                errors,
            )
        logger.info("Cached %s people across %s scopes", cached, len(scope_ids))
        return CacheResult(True, f"Cached {cached} people", category.value, cached)

    # Periodic checks

    async def check_staleness(self, now: datetime | None = None) -> bool:
        """Publish RefreshNeeded for stale categories and refresh if online."""
        stale = await asyncio.to_thread(self.stale_categories, now)
        self.is_offline_continuity_ready(now)
        if not stale:
            return False

        for name in stale:
            metadata = self.store.get_metadata(name)
            age_hours = (
                metadata.age(now).total_seconds() / 3600 if metadata else None
            )
            self.bus.publish(
                events.CACHE_REFRESH_NEEDED,
                RefreshNeeded(name, age_hours, now or datetime.now(UTC)),
            )

        if self.transport.is_online:
            result = await self.refresh()
            if not result.success:
                logger.warning("Automatic cache refresh failed: %s", result.message)
        return True

    def start(self) -> None:
        """Start the periodic staleness check and watch for reconnects."""
        if self._check_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._check_task = self._loop.create_task(self._periodic_check())
        self.transport.add_network_listener(self._on_network_change)
        self.is_offline_continuity_ready()
        logger.info("Cache manager started")

    async def stop(self) -> None:
        tasks = [t for t in [self._check_task, *self._tasks] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Cache task failed during shutdown")
        self._check_task = None
        self._tasks.clear()

    async def _periodic_check(self) -> None:
        interval = self.config.staleness_check_minutes * 60
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_staleness()
            except Exception:
                logger.exception("Error in cache staleness check")

    def _on_network_change(self, was_online: bool, is_online: bool) -> None:
        if self._loop is None or not is_online or was_online:
            return
        self._loop.call_soon_threadsafe(self._schedule_reconnect_check)

    def _schedule_reconnect_check(self) -> None:
        task = asyncio.get_running_loop().create_task(self._reconnect_check())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reconnect_check(self) -> None:
        await asyncio.sleep(self.config.reconnect_settle_seconds)
        try:
            await self.check_staleness()
        except Exception:
            logger.exception("Cache check after reconnect failed")

    # Queries and local edits

    def get_statistics(self, now: datetime | None = None) -> CacheStatistics:
        now = now or datetime.now(UTC)
        stats = CacheStatistics()
        for category in CacheCategory:
            metadata = self.store.get_metadata(category)
            entry = CategoryStatistics(category=category.value)
            if metadata is not None:
                entry.record_count = metadata.record_count
                entry.last_updated = metadata.last_updated
                entry.age_hours = metadata.age(now).total_seconds() / 3600
                entry.is_stale = metadata.age(now) > self.expiry
            stats.categories[category.value] = entry
        stats.people_by_scope = self.store.counts_by_scope(CacheCategory.PEOPLE)
        stats.continuity_ready = self.is_offline_continuity_ready(now)
        if self.database is not None:
            stats.database_size_bytes = self.database.size_bytes()
        return stats

    def get_cached(
        self,
        category: CacheCategory | str,
        scope_id: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        entities = self.store.get_entities(_category(category), scope_id, search)
        return [entity.data for entity in entities]

    def get_entity(
        self,
        category: CacheCategory | str,
        natural_key: str,
    ) -> CachedEntity | None:
        return self.store.get_entity(_category(category), natural_key)

    def mark_local_edit(self, natural_key: str) -> bool:
        """Tag a cached person as having an unsynced local edit."""
        return self.store.set_sync_status(
            CacheCategory.PEOPLE,
            natural_key,
            EntitySyncStatus.PENDING,
        )

    def mark_synced(self, natural_key: str) -> bool:
        return self.store.set_sync_status(
            CacheCategory.PEOPLE,
            natural_key,
            EntitySyncStatus.SYNCED,
        )

    async def clear_cache(self) -> CacheResult:
        if self._lock.locked():
            return CacheResult(False, IN_PROGRESS_MESSAGE)
        async with self._lock:
            count = await asyncio.to_thread(self.store.clear)
            await asyncio.to_thread(
                self.audit.log_sync,
                "cache_clear",
                "completed",
                count,
                "Cache cleared",
            )
        self.is_offline_continuity_ready()
        return CacheResult(True, f"Cleared {count} cached records", records_cached=0)
