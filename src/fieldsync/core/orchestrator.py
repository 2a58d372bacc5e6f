"""Synchronization cycle orchestration."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from fieldsync.config import FieldSyncConfig
from fieldsync.core import events
from fieldsync.core.events import ErrorEvent, EventBus, SyncProgress
from fieldsync.core.gate import SyncGate
from fieldsync.core.uploader import BatchUploader, UploadOutcome
from fieldsync.queue.manager import QueueManager
from fieldsync.queue.models import OperationType
from fieldsync.services.transport import SyncTransport
from fieldsync.storage.audit import AuditLog

if TYPE_CHECKING:
    from fieldsync.cache.manager import CacheManager

logger = logging.getLogger(__name__)

ALREADY_RUNNING_MESSAGE = "Synchronization already in progress"
OFFLINE_MESSAGE = "No network connectivity available"

# (operation type, progress percent when the step starts, status text)
UPLOAD_STEPS = [
    (OperationType.REGISTRATION, 25, "Syncing registrations"),
    (OperationType.VERIFICATION, 45, "Syncing verifications"),
    (OperationType.RECORD_UPDATE, 60, "Syncing record updates"),
]


@dataclass
class SyncResult:
    """Summary of one synchronization cycle."""

    success: bool = False
    message: str = ""
    registrations_synced: int = 0
    registrations_failed: int = 0
    verifications_synced: int = 0
    verifications_failed: int = 0
    record_updates_synced: int = 0
    record_updates_failed: int = 0
    deferred: int = 0
    references_refreshed: bool = False
    operations_cleaned: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def total_failed(self) -> int:
        return (
            self.registrations_failed
            + self.verifications_failed
            + self.record_updates_failed
        )

    @property
    def total_operations(self) -> int:
        return (
            self.registrations_synced
            + self.verifications_synced
            + self.record_updates_synced
            + self.total_failed
        )

    @property
    def duration(self) -> timedelta:
        end = self.completed_at or datetime.now(UTC)
        return end - self.started_at

    def record(self, kind: OperationType, outcome: UploadOutcome) -> None:
        if kind == OperationType.REGISTRATION:
            self.registrations_synced += outcome.synced
            self.registrations_failed += outcome.failed
        elif kind == OperationType.VERIFICATION:
            self.verifications_synced += outcome.synced
            self.verifications_failed += outcome.failed
        else:
            self.record_updates_synced += outcome.synced
            self.record_updates_failed += outcome.failed
        self.deferred += outcome.deferred
        self.errors.extend(outcome.errors)


class SyncOrchestrator:
    """Runs sync cycles: upload queued operations, refresh reference data, purge.

    Only one cycle runs at a time. The shared SyncGate is checked and taken
    before any work is scheduled, so a concurrent trigger is rejected rather
    than queued.
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        queue: QueueManager,
        uploader: BatchUploader,
        transport: SyncTransport,
        gate: SyncGate,
        bus: EventBus,
        audit: AuditLog,
        cache: "CacheManager | None" = None,
    ):
        self.config = config
        self.queue = queue
        self.uploader = uploader
        self.transport = transport
        self.gate = gate
        self.bus = bus
        self.audit = audit
        self.cache = cache

        self.is_running = False
        self.last_sync_attempt: datetime | None = None
        self.last_result: SyncResult | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    async def sync_all(self) -> SyncResult:
        """Run one full cycle now, unless a cycle is already running."""
        if not self.gate.try_acquire("sync"):
            logger.info(ALREADY_RUNNING_MESSAGE)
            return SyncResult(success=False, message=ALREADY_RUNNING_MESSAGE)
        try:
            return await self._run_cycle()
        finally:
            self.gate.release()

    async def force_sync(self) -> SyncResult:
        """Manual sync requested by the user."""
        if not self.transport.is_online:
            return SyncResult(success=False, message=OFFLINE_MESSAGE)
        return await self.sync_all()

    def _progress(self, percent: int, status: str) -> None:
        logger.debug("Sync progress %s%%: %s", percent, status)
        self.bus.publish(
            events.SYNC_PROGRESS,
            SyncProgress(percent=percent, status=status, timestamp=datetime.now(UTC)),
        )

    async def _run_cycle(self) -> SyncResult:
        result = SyncResult()
        self.is_running = True
        self.last_sync_attempt = result.started_at

        try:
            if not self.transport.is_online:
                result.message = OFFLINE_MESSAGE
                return result

            logger.info("Starting synchronization")
            self._progress(0, "Starting synchronization")
            await self.queue.reclaim_stale()

            for kind, percent, status in UPLOAD_STEPS:
                if not self.transport.is_online:
                    break
                self._progress(percent, status)
                result.record(kind, await self._sync_category(kind))

            self._progress(75, "Refreshing reference data")
            await self._refresh_references(result)

            self._progress(90, "Cleaning up")
            result.operations_cleaned = await self.queue.cleanup_completed(
                self.config.retention_days,
            )

            self._finish(result)
            self._progress(100, "Synchronization completed")
            self.bus.publish(events.SYNC_COMPLETED, result)
            await asyncio.to_thread(
                self.audit.log_sync,
                "sync_all",
                "completed" if result.success else "partial",
                result.total_operations,
                result.message,
            )
        except Exception as e:
            logger.exception("Synchronization failed")
            result.success = False
            result.message = f"Synchronization failed: {e}"
            result.errors.append(str(e))
            self.bus.publish(
                events.SYNC_ERROR,
                ErrorEvent("sync", result.message, e, datetime.now(UTC)),
            )
            await asyncio.to_thread(self.audit.log_error, "sync", result.message)
        finally:
            result.completed_at = datetime.now(UTC)
            self.is_running = False
            self.last_result = result

        return result

    def _finish(self, result: SyncResult) -> None:
        if result.total_failed:
            result.success = False
            result.message = (
                f"Synchronization completed with {result.total_failed} failures"
            )
        elif not self.transport.is_online:
            result.success = False
            result.message = "Network connectivity lost during synchronization"
        else:
            result.success = True
            result.message = "Synchronization completed successfully"

        logger.info(
            "%s (%s synced, %s deferred, %.1fs)",
            result.message,
            result.total_operations - result.total_failed,
            result.deferred,
            result.duration.total_seconds(),
        )

    async def _sync_category(self, kind: OperationType) -> UploadOutcome:
        """Upload every eligible operation of one type, batch by batch.

        Each operation is taken at most once per cycle; anything that goes
        back to pending waits for the next cycle.
        """
        total = UploadOutcome()
        handled: set[int] = set()

        while True:
            batch = await self.queue.get_next_batch(
                self.config.orchestrator_batch_size,
                kind,
                exclude_ids=handled,
            )
            if not batch:
                break
            handled.update(item.id for item in batch)

            outcome = await self.uploader.upload(kind, batch)
            total.merge(outcome)
            if outcome.network_lost:
                break

        if handled:
            logger.info(
                "%s: %s synced, %s failed, %s deferred",
                kind.value,
                total.synced,
                total.failed,
                total.deferred,
            )
        return total

    async def _refresh_references(self, result: SyncResult) -> None:
        if self.cache is None or not self.transport.is_online:
            return
        try:
            refresh = await self.cache.refresh_if_stale()
        except Exception as e:
            logger.exception("Reference data refresh failed")
            result.errors.append(f"Reference data refresh failed: {e}")
            return

        result.references_refreshed = refresh.was_stale and refresh.success
        if refresh.was_stale and not refresh.success:
            result.errors.append(refresh.message)

    # Triggers

    def start(self) -> None:
        """Arm the periodic timer and the reconnect trigger."""
        if self._timer_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._timer_task = self._loop.create_task(self._periodic_sync())
        self.transport.add_network_listener(self._on_network_change)
        logger.info(
            "Automatic sync enabled every %s minutes",
            self.config.sync_interval_minutes,
        )

    async def stop(self) -> None:
        tasks = [t for t in [self._timer_task, *self._tasks] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Sync task failed during shutdown")
        self._timer_task = None
        self._tasks.clear()

    def trigger(self, source: str) -> bool:
        """Schedule a background cycle. Returns False if one is already running."""
        if not self.gate.try_acquire(source):
            logger.debug("Sync trigger from %s rejected: cycle in progress", source)
            return False

        task = asyncio.get_running_loop().create_task(self._run_gated())
        self._tasks.add(task)

        def handle_completion(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exception = t.exception()
            if exception:
                logger.error(
                    "Background sync from %s failed",
                    source,
                    exc_info=exception,
                )
                self.bus.publish(
                    events.SYNC_ERROR,
                    ErrorEvent("sync", str(exception), exception, datetime.now(UTC)),
                )

        task.add_done_callback(handle_completion)
        return True

    async def _run_gated(self) -> SyncResult:
        try:
            return await self._run_cycle()
        finally:
            self.gate.release()

    def _sync_is_due(self) -> bool:
        if self.last_sync_attempt is None:
            return True
        interval = timedelta(minutes=self.config.sync_interval_minutes)
        return datetime.now(UTC) - self.last_sync_attempt >= interval

    async def _periodic_sync(self) -> None:
        interval = self.config.sync_interval_minutes * 60
        while True:
            await asyncio.sleep(interval)
            if not self.transport.is_online or not self._sync_is_due():
                continue
            self.trigger("timer")

    def _on_network_change(self, was_online: bool, is_online: bool) -> None:
        if self._loop is None or was_online or not is_online:
            return
        self._loop.call_soon_threadsafe(self._schedule_reconnect_sync)

    def _schedule_reconnect_sync(self) -> None:
        task = asyncio.get_running_loop().create_task(self._reconnect_sync())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reconnect_sync(self) -> None:
        await asyncio.sleep(self.config.reconnect_settle_seconds)
        if self.transport.is_online:
            logger.info("Network restored, starting synchronization")
            self.trigger("reconnect")
