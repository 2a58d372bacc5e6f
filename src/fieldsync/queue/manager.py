"""Queue management for offline operations."""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from fieldsync.config import FieldSyncConfig
from fieldsync.error_handling import FieldSyncError, TransientNetworkError
from fieldsync.queue.models import (
    OperationStatus,
    OperationType,
    QueuedOperation,
    normalize_payload,
)
from fieldsync.storage.audit import AuditLog
from fieldsync.storage.queue_store import QueueStore

logger = logging.getLogger(__name__)

ProcessFn = Callable[[QueuedOperation], bool | Awaitable[bool]]


@dataclass
class QueueStatistics:
    """Snapshot of queue depth per type and status."""

    pending_registrations: int = 0
    pending_verifications: int = 0
    pending_record_updates: int = 0
    syncing: int = 0
    synced: int = 0
    failed: int = 0
    failed_retryable: int = 0
    cancelled: int = 0
    last_updated: datetime | None = None

    @property
    def total_pending(self) -> int:
        return (
            self.pending_registrations
            + self.pending_verifications
            + self.pending_record_updates
        )

    @property
    def has_pending_operations(self) -> bool:
        return self.total_pending > 0 or self.failed_retryable > 0


@dataclass
class BatchResult:
    """Outcome of running a callback over a batch of operations."""

    total_processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    deferred_count: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def duration(self) -> timedelta:
        end = self.completed_at or datetime.now(UTC)
        return end - self.started_at

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.success_count / self.total_processed * 100


class QueueManager:
    """Typed enqueue operations and batch processing over the queue store.

    Store calls run in a worker thread so the event loop is never blocked
    on SQLite.
    """

    def __init__(self, config: FieldSyncConfig, store: QueueStore, audit: AuditLog):
        self.config = config
        self.store = store
        self.audit = audit

    async def queue_registration(self, data: Any) -> int:
        """Queue a biometric enrollment for upload."""
        return await self._enqueue(OperationType.REGISTRATION, data)

    async def queue_verification(self, data: Any) -> int:
        """Queue an identity verification outcome for upload."""
        return await self._enqueue(OperationType.VERIFICATION, data)

    async def queue_record_update(self, data: Any) -> int:
        """Queue a local record edit for upload."""
        return await self._enqueue(OperationType.RECORD_UPDATE, data)

    async def _enqueue(self, operation_type: OperationType, data: Any) -> int:
        try:
            payload = normalize_payload(operation_type, data)
            operation_id = await asyncio.to_thread(
                self.store.enqueue,
                operation_type,
                payload,
                operation_type.priority,
                max_attempts=self.config.max_retry_attempts,
            )
        except Exception as e:
            logger.exception("Failed to queue %s", operation_type.value)
            await asyncio.to_thread(
                self.audit.log_error,
                "queue",
                f"Failed to queue {operation_type.value}",
                str(e),
            )
            raise

        await asyncio.to_thread(
            self.audit.log_sync,
            f"queue_{operation_type.value}",
            "queued",
            1,
            f"Queued {operation_type.value} for {payload['roll_number']}",
        )
        logger.info(
            "Queued %s for %s (operation %s)",
            operation_type.value,
            payload["roll_number"],
            operation_id,
        )
        return operation_id

    async def get_next_batch(
        self,
        limit: int,
        operation_type: OperationType | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[QueuedOperation]:
        """Take the next eligible operations and mark them syncing."""
        return await asyncio.to_thread(
            self.store.dequeue_batch,
            limit,
            operation_type,
            tuple(exclude_ids),
        )

    async def mark_success(self, operation_id: int) -> bool:
        return await asyncio.to_thread(self.store.mark_success, operation_id)

    async def mark_failed(self, operation_id: int, error: str) -> OperationStatus | None:
        return await asyncio.to_thread(self.store.mark_failed, operation_id, error)

    async def release(self, operation_ids: Iterable[int]) -> int:
        return await asyncio.to_thread(self.store.release, list(operation_ids))

    async def has_unsynced_updates(self, natural_key: str, exclude_id: int | None = None) -> bool:
        """Whether another record update for ``natural_key`` is still waiting to upload."""
        return await asyncio.to_thread(
            self.store.has_unsynced,
            OperationType.RECORD_UPDATE,
            natural_key,
            exclude_id=exclude_id,
        )

    async def get_statistics(self) -> QueueStatistics:
        """Collect pending counts per type and totals per status."""
        pending = await asyncio.to_thread(self.store.pending_counts_by_type)
        by_status = await asyncio.to_thread(self.store.count_by_status)
        retryable = await asyncio.to_thread(self.store.failed_retryable_count)
        last_updated = await asyncio.to_thread(self.store.last_updated)

        return QueueStatistics(
            pending_registrations=pending.get(OperationType.REGISTRATION, 0),
            pending_verifications=pending.get(OperationType.VERIFICATION, 0),
            pending_record_updates=pending.get(OperationType.RECORD_UPDATE, 0),
            syncing=by_status.get(OperationStatus.SYNCING, 0),
            synced=by_status.get(OperationStatus.SYNCED, 0),
            failed=by_status.get(OperationStatus.FAILED, 0) - retryable,
            failed_retryable=retryable,
            cancelled=by_status.get(OperationStatus.CANCELLED, 0),
            last_updated=last_updated,
        )

    async def process_batch(
        self,
        items: list[QueuedOperation],
        process_fn: ProcessFn,
    ) -> BatchResult:
        """Run ``process_fn`` on each item and record the outcome.

        ``True`` marks the item synced, ``False`` or a raised exception
        marks it failed. A TransientNetworkError defers the item: it goes
        back to pending without counting an attempt. One item's failure
        never stops the rest of the batch. Cancellation returns the item
        in flight and the unprocessed rest to pending.
        """
        result = BatchResult()

        for index, item in enumerate(items):
            result.total_processed += 1
            try:
                outcome = process_fn(item)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except TransientNetworkError as e:
                logger.info("Deferring %s: %s", item, e.message)
                await self.release([item.id])
                result.deferred_count += 1
                continue
            except asyncio.CancelledError:
                await self.release([pending.id for pending in items[index:]])
                raise
            except Exception as e:
                error = e.message if isinstance(e, FieldSyncError) else str(e)
                logger.warning("Error processing %s: %s", item, error)
                await self.mark_failed(item.id, error or type(e).__name__)
                result.failed_count += 1
                result.errors.append(f"Operation {item.id}: {error}")
                continue

            if outcome:
                await self.mark_success(item.id)
                result.success_count += 1
            else:
                await self.mark_failed(item.id, "Processing returned false")
                result.failed_count += 1
                result.errors.append(f"Operation {item.id}: processing returned false")

        result.completed_at = datetime.now(UTC)

        if result.total_processed:
            await asyncio.to_thread(
                self.audit.log_sync,
                "process_batch",
                "completed" if result.failed_count == 0 else "partial",
                result.total_processed,
                (
                    f"{result.success_count} succeeded, {result.failed_count} failed, "
                    f"{result.deferred_count} deferred ({result.success_rate:.1f}%)"
                ),
            )
        return result

    async def retry_failed_operations(
        self,
        process_fn: ProcessFn,
        stale_after: timedelta | None = None,
    ) -> BatchResult:
        """Reprocess failed operations with attempts left and stale syncing ones."""
        if stale_after is None:
            stale_after = timedelta(minutes=self.config.syncing_stale_minutes)

        candidates = await asyncio.to_thread(self.store.list_retryable, stale_after)
        if not candidates:
            return BatchResult(completed_at=datetime.now(UTC))

        claimed = await asyncio.to_thread(
            self.store.claim,
            [item.id for item in candidates],
            stale_after,
        )
        logger.info("Retrying %s failed operations", len(claimed))
        return await self.process_batch(claimed, process_fn)

    async def reclaim_stale(self, stale_after: timedelta | None = None) -> int:
        if stale_after is None:
            stale_after = timedelta(minutes=self.config.syncing_stale_minutes)
        return await asyncio.to_thread(self.store.reclaim_stale, stale_after)

    async def reset_stuck_operations(self) -> int:
        return await asyncio.to_thread(self.store.reset_stuck_syncing)

    async def cleanup_completed(self, older_than_days: int | None = None) -> int:
        """Remove synced and cancelled operations past the retention period."""
        if older_than_days is None:
            older_than_days = self.config.retention_days
        count = await asyncio.to_thread(self.store.cleanup, older_than_days)
        if count:
            await asyncio.to_thread(
                self.audit.log_sync,
                "cleanup",
                "completed",
                count,
                f"Removed operations older than {older_than_days} days",
            )
        return count

    async def get_operations(
        self,
        operation_type: OperationType | None = None,
        status: OperationStatus | None = None,
        limit: int = 100,
    ) -> list[QueuedOperation]:
        return await asyncio.to_thread(
            self.store.list_operations,
            status,
            operation_type,
            limit,
        )

    async def reset_operation(self, operation_id: int) -> bool:
        """Give a terminally failed operation another full set of attempts."""
        return await asyncio.to_thread(self.store.reset_failed, operation_id)

    async def cancel_operation(self, operation_id: int) -> bool:
        return await asyncio.to_thread(self.store.cancel, operation_id)
