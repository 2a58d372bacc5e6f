"""Batch upload and key-based reconciliation of server outcomes."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from fieldsync.error_handling import (
    FieldSyncError,
    PayloadError,
    ServerError,
    TransientNetworkError,
)
from fieldsync.queue.manager import QueueManager
from fieldsync.queue.models import NATURAL_KEY_FIELD, OperationType, QueuedOperation
from fieldsync.services.transport import ItemOutcome, SyncTransport

if TYPE_CHECKING:
    from fieldsync.cache.manager import CacheManager

logger = logging.getLogger(__name__)

NO_OUTCOME_ERROR = "No outcome returned"
UNKNOWN_ERROR = "Unknown error"


@dataclass
class UploadOutcome:
    """Per-category tally of one upload round-trip."""

    synced: int = 0
    failed: int = 0
    deferred: int = 0
    network_lost: bool = False
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "UploadOutcome") -> None:
        self.synced += other.synced
        self.failed += other.failed
        self.deferred += other.deferred
        self.network_lost = self.network_lost or other.network_lost
        self.errors.extend(other.errors)


def _decode(item: QueuedOperation) -> tuple[str, dict[str, Any]]:
    data = item.decode_payload()
    key = data.get(NATURAL_KEY_FIELD)
    if key in (None, ""):
        msg = f"Failed to parse operation data: missing {NATURAL_KEY_FIELD}"
        raise PayloadError(msg)
    return str(key), data


class BatchUploader:
    """Serializes queued operations, uploads them and applies the results.

    Server outcomes are matched to local items by natural key, never by
    position. Within one upload a natural key appears at most once; later
    operations for the same key are released and go out in a later batch,
    which keeps edits to the same record in enqueue order.
    """

    def __init__(
        self,
        queue: QueueManager,
        transport: SyncTransport,
        cache: "CacheManager | None" = None,
    ):
        self.queue = queue
        self.transport = transport
        self.cache = cache

    async def upload(
        self,
        kind: OperationType,
        items: list[QueuedOperation],
    ) -> UploadOutcome:
        """Upload syncing ``items`` of one type and reconcile every one of them."""
        outcome = UploadOutcome()
        sendable: dict[str, QueuedOperation] = {}
        wire: list[dict[str, Any]] = []
        duplicates: list[int] = []

        for item in items:
            try:
                key, data = _decode(item)
            except PayloadError as e:
                logger.warning("Skipping %s: %s", item, e.message)
                await self.queue.mark_failed(item.id, e.message)
                outcome.failed += 1
                outcome.errors.append(f"Operation {item.id}: {e.message}")
                continue
            if key in sendable:
                duplicates.append(item.id)
                continue
            sendable[key] = item
            wire.append(data)

        if duplicates:
            await self.queue.release(duplicates)
            outcome.deferred += len(duplicates)

        if not sendable:
            return outcome

        try:
            response = await self.transport.upload_batch(kind, wire)
        except TransientNetworkError as e:
            logger.warning(
                "Network unavailable, deferring %s %s operations",
                len(sendable),
                kind.value,
            )
            await self.queue.release([item.id for item in sendable.values()])
            outcome.deferred += len(sendable)
            outcome.network_lost = True
            outcome.errors.append(f"{kind.value}: {e.message}")
            return outcome
        except FieldSyncError as e:
            logger.error("Batch upload of %s rejected: %s", kind.value, e.message)
            for item in sendable.values():
                await self.queue.mark_failed(item.id, e.message)
            outcome.failed += len(sendable)
            outcome.errors.append(f"{kind.value}: {e.message}")
            return outcome
        except Exception:
            await self.queue.release([item.id for item in sendable.values()])
            raise

        by_key = {result.natural_key: result for result in response.outcomes}
        for key, item in sendable.items():
            result = by_key.get(key)
            if result is not None and result.succeeded:
                await self.queue.mark_success(item.id)
                await self._after_success(item, key)
                outcome.synced += 1
                continue

            error = NO_OUTCOME_ERROR if result is None else result.error or UNKNOWN_ERROR
            await self.queue.mark_failed(item.id, error)
            outcome.failed += 1
            outcome.errors.append(f"{kind.value} {key}: {error}")

        return outcome

    async def send_single(self, item: QueuedOperation) -> bool:
        """Upload one operation for ``QueueManager.process_batch``.

        Raises instead of returning False so the server's reason ends up in
        ``last_error``; a TransientNetworkError defers the item. Nothing is
        sent while the transport is offline.
        """
        if not self.transport.is_online:
            msg = "No network connectivity available"
            raise TransientNetworkError(msg)
        key, data = _decode(item)
        response = await self.transport.upload_batch(item.operation_type, [data])
        result: ItemOutcome | None = next(
            (r for r in response.outcomes if r.natural_key == key),
            None,
        )
        if result is None:
            raise ServerError(NO_OUTCOME_ERROR)
        if not result.succeeded:
            raise ServerError(result.error or UNKNOWN_ERROR)
        await self._after_success(item, key)
        return True

    async def _after_success(self, item: QueuedOperation, key: str) -> None:
        # The cached person stays pending while a later edit is still queued.
        if item.operation_type != OperationType.RECORD_UPDATE or self.cache is None:
            return
        try:
            if await self.queue.has_unsynced_updates(key, exclude_id=item.id):
                logger.debug("Record %s has further queued updates, keeping pending", key)
                return
            await asyncio.to_thread(self.cache.mark_synced, key)
        except Exception:
            logger.exception("Failed to update cached record %s", key)
