"""Background queue processing on a timer and on reconnect."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from fieldsync.config import FieldSyncConfig
from fieldsync.core import events
from fieldsync.core.events import ErrorEvent, EventBus
from fieldsync.core.gate import SyncGate
from fieldsync.core.uploader import BatchUploader
from fieldsync.queue.manager import BatchResult, QueueManager
from fieldsync.services.transport import SyncTransport
from fieldsync.storage.audit import AuditLog

logger = logging.getLogger(__name__)


@dataclass
class ProcessingRun:
    """Totals for one background processing run."""

    batches: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    retried: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def add(self, batch: BatchResult) -> None:
        self.processed += batch.total_processed
        self.succeeded += batch.success_count
        self.failed += batch.failed_count
        self.deferred += batch.deferred_count
        self.errors.extend(batch.errors)


class BackgroundScheduler:
    """Drains the queue in small batches without overlapping other runs.

    Every trigger (timer, reconnect, manual) takes the shared SyncGate before
    scheduling work; a held gate means the trigger is dropped.
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
    ):
        self.config = config
        self.queue = queue
        self.uploader = uploader
        self.transport = transport
        self.gate = gate
        self.bus = bus
        self.audit = audit

        self.interval_minutes = config.sync_interval_minutes
        self.last_run: ProcessingRun | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer_task: asyncio.Task | None = None
        self._run_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._cancel = asyncio.Event()
        self._started = False

    @property
    def is_processing(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def start(self, interval_minutes: int | None = None) -> None:
        """Arm the timer, watch the network and run once now if online."""
        if self._started:
            logger.warning("Background scheduler is already running")
            return
        if interval_minutes is not None:
            self.interval_minutes = interval_minutes

        self._loop = asyncio.get_running_loop()
        self._cancel = asyncio.Event()
        self._started = True
        self.transport.add_network_listener(self._on_network_change)
        self._timer_task = self._loop.create_task(self._timer())
        logger.info(
            "Background scheduler started (every %s minutes)",
            self.interval_minutes,
        )

        if self.transport.is_online:
            self._trigger("startup")

    async def stop(self) -> None:
        """Stop triggering and wait a bounded time for an in-flight run."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if not self._started:
            return
        self._started = False
        self._cancel.set()

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self.is_processing:
            logger.info("Waiting for background processing to finish")
            done, _ = await asyncio.wait(
                {self._run_task},
                timeout=self.config.shutdown_timeout_seconds,
            )
            if not done:
                logger.warning(
                    "Background processing did not stop within %ss, cancelling it",
                    self.config.shutdown_timeout_seconds,
                )
                self._run_task.cancel()
                await asyncio.wait({self._run_task})

        logger.info("Background scheduler stopped")

    def trigger_now(self) -> bool:
        """Process the queue immediately. A no-op while offline."""
        if not self.transport.is_online:
            logger.info("Skipping background processing: network offline")
            task = asyncio.get_running_loop().create_task(
                asyncio.to_thread(
                    self.audit.log_sync,
                    "process_now",
                    "skipped",
                    0,
                    "Skipped - network offline",
                ),
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return False
        return self._trigger("manual")

    def _trigger(self, source: str) -> bool:
        if not self.gate.try_acquire(f"scheduler:{source}"):
            logger.debug("Processing trigger from %s rejected: run in progress", source)
            return False

        task = asyncio.get_running_loop().create_task(self._run_gated(source))
        self._run_task = task

        def handle_completion(t: asyncio.Task) -> None:
            if t.cancelled():
                return
            exception = t.exception()
            if exception:
                logger.error(
                    "Background processing from %s failed",
                    source,
                    exc_info=exception,
                )
                self.bus.publish(
                    events.PROCESSING_ERROR,
                    ErrorEvent("scheduler", str(exception), exception, datetime.now(UTC)),
                )

        task.add_done_callback(handle_completion)
        return True

    async def _run_gated(self, source: str) -> ProcessingRun:
        try:
            return await self.process_queue(source)
        finally:
            self.gate.release()

    async def process_queue(self, source: str = "manual") -> ProcessingRun:
        """Page through pending operations, then retry failed ones.

        The caller must hold the gate.
        """
        run = ProcessingRun()
        statistics = await self.queue.get_statistics()
        if not statistics.has_pending_operations:
            logger.debug("No pending operations to process")
            run.completed_at = datetime.now(UTC)
            self.last_run = run
            return run

        logger.info(
            "Processing %s pending operations (%s)",
            statistics.total_pending,
            source,
        )
        self.bus.publish(events.PROCESSING_STARTED, statistics)

        handled: set[int] = set()
        while not self._cancel.is_set():
            batch = await self.queue.get_next_batch(
                self.config.scheduler_batch_size,
                exclude_ids=handled,
            )
            if not batch:
                break
            handled.update(item.id for item in batch)

            result = await self.queue.process_batch(batch, self.uploader.send_single)
            run.batches += 1
            run.add(result)

            if result.deferred_count:
                logger.info("Network unavailable, stopping background processing")
                break
            if self._cancel.is_set():
                break
            await asyncio.sleep(self.config.scheduler_batch_delay_seconds)

        if not self._cancel.is_set() and self.transport.is_online:
            retry = await self.queue.retry_failed_operations(self.uploader.send_single)
            run.retried = retry.total_processed
            run.add(retry)

        run.cancelled = self._cancel.is_set()
        run.completed_at = datetime.now(UTC)
        self.last_run = run

        logger.info(
            "Background processing finished: %s succeeded, %s failed, %s deferred",
            run.succeeded,
            run.failed,
            run.deferred,
        )
        self.bus.publish(events.PROCESSING_COMPLETED, run)
        await asyncio.to_thread(
            self.audit.log_sync,
            "background_processing",
            "completed" if run.failed == 0 else "partial",
            run.processed,
            f"{run.batches} batches, {run.succeeded} succeeded, {run.failed} failed",
        )
        return run

    async def _timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval_minutes * 60)
            if self.transport.is_online:
                self._trigger("timer")

    def _on_network_change(self, was_online: bool, is_online: bool) -> None:
        if self._loop is None or not self._started or was_online or not is_online:
            return
        self._loop.call_soon_threadsafe(self._trigger, "reconnect")
