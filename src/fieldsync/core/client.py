"""Client facade that wires the queue, sync and cache components together."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from fieldsync.cache.manager import CacheManager, CacheStatistics, RefreshResult
from fieldsync.config import FieldSyncConfig
from fieldsync.core.events import EventBus
from fieldsync.core.gate import SyncGate
from fieldsync.core.orchestrator import SyncOrchestrator, SyncResult
from fieldsync.core.scheduler import BackgroundScheduler
from fieldsync.core.uploader import BatchUploader
from fieldsync.queue.manager import QueueManager, QueueStatistics
from fieldsync.services.network import NetworkMonitor
from fieldsync.services.ntfy import NotificationService
from fieldsync.services.transport import HttpTransport, SyncTransport
from fieldsync.storage.audit import AuditLog
from fieldsync.storage.cache_store import CacheStore
from fieldsync.storage.database import Database
from fieldsync.storage.queue_store import QueueStore

logger = logging.getLogger(__name__)


class OfflineClient:
    """Everything a caller needs to work offline and sync later.

    Components are built here and injected into each other; nothing is a
    process-wide singleton. Pass ``transport`` to replace the HTTP transport
    (tests use an AsyncMock).
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        *,
        transport: SyncTransport | None = None,
        database: Database | None = None,
    ):
        self.config = config
        config.ensure_directories()

        self.database = database or Database(config)
        self.events = EventBus()
        self.gate = SyncGate()
        self.audit = AuditLog(self.database)

        self.monitor: NetworkMonitor | None = None
        if transport is None:
            self.monitor = NetworkMonitor(config)
            transport = HttpTransport(config, self.monitor)
        self.transport = transport

        self.queue_store = QueueStore(self.database, config.max_retry_attempts)
        self.cache_store = CacheStore(self.database)

        self.queue = QueueManager(config, self.queue_store, self.audit)
        self.cache = CacheManager(
            config,
            self.cache_store,
            self.transport,
            self.events,
            self.audit,
            self.database,
        )
        self.uploader = BatchUploader(self.queue, self.transport, self.cache)
        self.orchestrator = SyncOrchestrator(
            config,
            self.queue,
            self.uploader,
            self.transport,
            self.gate,
            self.events,
            self.audit,
            self.cache,
        )
        self.scheduler = BackgroundScheduler(
            config,
            self.queue,
            self.uploader,
            self.transport,
            self.gate,
            self.events,
            self.audit,
        )

        self.notifications: NotificationService | None = None
        if config.ntfy_topic:
            self.notifications = NotificationService(config)
            self.notifications.attach(self.events)

        self.is_running = False

    async def start(self) -> None:
        """Recover from the last run, then start monitoring and background work."""
        if self.is_running:
            logger.warning("Client is already running")
            return

        logger.info("Starting FieldSync client")
        reset_count = await self.queue.reset_stuck_operations()
        if reset_count > 0:
            logger.info("Reset %s stuck operations to pending status", reset_count)

        if self.monitor is not None:
            await self.monitor.start()

        self.cache.start()
        if self.config.auto_sync_enabled:
            self.orchestrator.start()
            self.scheduler.start()
        self.is_running = True
        logger.info("FieldSync client started")

    async def stop(self) -> None:
        if not self.is_running:
            return
        logger.info("Stopping FieldSync client")
        self.is_running = False

        await self.scheduler.stop()
        await self.orchestrator.stop()
        await self.cache.stop()
        if self.monitor is not None:
            await self.monitor.stop()
        if isinstance(self.transport, HttpTransport):
            await self.transport.close()
        logger.info("FieldSync client stopped")

    def close(self) -> None:
        """Release the database and notification resources."""
        if self.notifications is not None:
            self.notifications.detach()
            self.notifications.notifier.close()
        self.database.close()

    # Queue operations

    async def queue_registration(self, data: Any) -> int:
        return await self.queue.queue_registration(data)

    async def queue_verification(self, data: Any) -> int:
        return await self.queue.queue_verification(data)

    async def queue_record_update(self, data: Any) -> int:
        """Queue a record edit and tag the cached record as locally modified."""
        operation_id = await self.queue.queue_record_update(data)
        roll_number = data["roll_number"] if isinstance(data, dict) else data.roll_number
        await asyncio.to_thread(self.cache.mark_local_edit, str(roll_number))
        return operation_id

    async def get_queue_statistics(self) -> QueueStatistics:
        return await self.queue.get_statistics()

    # Sync

    async def force_sync_now(self) -> SyncResult:
        return await self.orchestrator.force_sync()

    def process_queue_now(self) -> bool:
        return self.scheduler.trigger_now()

    # Cache

    async def refresh_cache(self, scope_ids: list[str] | None = None) -> RefreshResult:
        return await self.cache.refresh(scope_ids)

    def get_cache_statistics(self) -> CacheStatistics:
        return self.cache.get_statistics()

    def is_offline_continuity_ready(self) -> bool:
        return self.cache.is_offline_continuity_ready()

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        return self.events.subscribe(topic, handler)

    async def __aenter__(self) -> "OfflineClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
        self.close()
