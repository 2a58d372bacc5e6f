"""Synchronization cycle tests - upload reconciliation and cycle results."""

from unittest.mock import AsyncMock

import pytest

from fieldsync.cache.manager import RefreshResult
from fieldsync.core import events
from fieldsync.core.events import EventBus
from fieldsync.core.gate import SyncGate
from fieldsync.core.orchestrator import (
    ALREADY_RUNNING_MESSAGE,
    OFFLINE_MESSAGE,
    SyncOrchestrator,
)
from fieldsync.core.uploader import BatchUploader
from fieldsync.error_handling import ServerError, TransientNetworkError
from fieldsync.queue.models import OperationStatus, OperationType
from fieldsync.services.transport import ItemOutcome, UploadResponse
from sync_helpers import echo_outcomes, record_update, registration, verification


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def gate():
    return SyncGate()


@pytest.fixture
def orchestrator(temp_config, queue_manager, mock_transport, gate, bus, audit):
    uploader = BatchUploader(queue_manager, mock_transport)
    return SyncOrchestrator(
        temp_config,
        queue_manager,
        uploader,
        mock_transport,
        gate,
        bus,
        audit,
    )


async def queue_registrations(queue_manager, *keys, max_attempts=None):
    ids = {}
    for key in keys:
        if max_attempts is None:
            ids[key] = await queue_manager.queue_registration(registration(key))
        else:
            ids[key] = queue_manager.store.enqueue(
                OperationType.REGISTRATION,
                registration(key),
                max_attempts=max_attempts,
            )
    return ids


class TestSyncCycle:
    """Test a full synchronization cycle."""

    @pytest.mark.asyncio
    async def test_all_categories_uploaded(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        await queue_registrations(queue_manager, "R1", "R2")
        await queue_manager.queue_verification(verification("V1"))
        await queue_manager.queue_record_update(record_update("U1"))

        result = await orchestrator.sync_all()

        assert result.success is True
        assert result.message == "Synchronization completed successfully"
        assert result.registrations_synced == 2
        assert result.verifications_synced == 1
        assert result.record_updates_synced == 1
        assert result.total_operations == 4
        kinds = [call.args[0] for call in mock_transport.upload_batch.await_args_list]
        assert kinds == [
            OperationType.REGISTRATION,
            OperationType.VERIFICATION,
            OperationType.RECORD_UPDATE,
        ]
        assert queue_store.count_by_status() == {OperationStatus.SYNCED: 4}

    @pytest.mark.asyncio
    async def test_progress_events(self, orchestrator, bus):
        progress = []
        completed = []
        bus.subscribe(events.SYNC_PROGRESS, lambda e: progress.append(e.percent))
        bus.subscribe(events.SYNC_COMPLETED, completed.append)

        await orchestrator.sync_all()

        assert progress == [0, 25, 45, 60, 75, 90, 100]
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(
        self, orchestrator, queue_manager, mock_transport, temp_config
    ):
        temp_config.orchestrator_batch_size = 2
        await queue_registrations(queue_manager, "A", "B", "C", "D", "E")

        result = await orchestrator.sync_all()

        sizes = [len(call.args[1]) for call in mock_transport.upload_batch.await_args_list]
        assert sizes == [2, 2, 1]
        assert result.registrations_synced == 5

    @pytest.mark.asyncio
    async def test_cycle_writes_audit(self, orchestrator, audit):
        await orchestrator.sync_all()

        assert audit.recent_sync_logs(1)[0].operation == "sync_all"


class TestReconciliation:
    """Test matching server outcomes to local items by natural key."""

    @pytest.mark.asyncio
    async def test_outcomes_matched_by_key_not_position(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        """Test A success, B duplicate, C success in scrambled response order."""
        ids = await queue_registrations(queue_manager, "A", "B", "C")
        mock_transport.upload_batch.side_effect = None
        mock_transport.upload_batch.return_value = UploadResponse(
            success=False,
            outcomes=[
                ItemOutcome("C", "success"),
                ItemOutcome("B", "failed", "duplicate"),
                ItemOutcome("A", "success"),
            ],
        )

        result = await orchestrator.sync_all()

        a, b, c = (queue_store.get(ids[key]) for key in ("A", "B", "C"))
        assert a.status == OperationStatus.SYNCED
        assert c.status == OperationStatus.SYNCED
        assert b.status == OperationStatus.PENDING
        assert b.attempts == 1
        assert b.last_error == "duplicate"
        assert result.registrations_synced == 2
        assert result.registrations_failed == 1
        assert result.success is False
        assert result.message == "Synchronization completed with 1 failures"

    @pytest.mark.asyncio
    async def test_single_attempt_failure_is_terminal(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        ids = await queue_registrations(queue_manager, "A", "B", "C", max_attempts=1)
        mock_transport.upload_batch.side_effect = (
            lambda kind, items: echo_outcomes(kind, items, {"B": "duplicate"})
        )

        await orchestrator.sync_all()

        b = queue_store.get(ids["B"])
        assert b.status == OperationStatus.FAILED
        assert b.attempts == 1

    @pytest.mark.asyncio
    async def test_missing_outcome_is_failure(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        ids = await queue_registrations(queue_manager, "A", "B")
        mock_transport.upload_batch.side_effect = None
        mock_transport.upload_batch.return_value = UploadResponse(
            success=True,
            outcomes=[ItemOutcome("A", "success")],
        )

        await orchestrator.sync_all()

        b = queue_store.get(ids["B"])
        assert b.status == OperationStatus.PENDING
        assert b.last_error == "No outcome returned"

    @pytest.mark.asyncio
    async def test_failed_outcome_without_reason(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        ids = await queue_registrations(queue_manager, "A")
        mock_transport.upload_batch.side_effect = None
        mock_transport.upload_batch.return_value = UploadResponse(
            success=False,
            outcomes=[ItemOutcome("A", "failed")],
        )

        await orchestrator.sync_all()

        assert queue_store.get(ids["A"]).last_error == "Unknown error"

    @pytest.mark.asyncio
    async def test_same_key_uploaded_in_order(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        """Test two edits to one record never share an upload."""
        first = await queue_manager.queue_record_update(record_update("A", phone="1"))
        second = await queue_manager.queue_record_update(record_update("A", phone="2"))

        result = await orchestrator.sync_all()

        assert queue_store.get(first).status == OperationStatus.SYNCED
        assert queue_store.get(second).status == OperationStatus.PENDING
        assert result.deferred == 1

        await orchestrator.sync_all()

        assert queue_store.get(second).status == OperationStatus.SYNCED
        uploads = [call.args[1] for call in mock_transport.upload_batch.await_args_list]
        assert [batch[0]["changes"]["phone"] for batch in uploads] == ["1", "2"]


class TestErrorTaxonomy:
    """Test handling of each failure class."""

    @pytest.mark.asyncio
    async def test_corrupt_payload_isolated(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        bad_id = queue_store.enqueue(OperationType.REGISTRATION, "{not json")
        ids = await queue_registrations(queue_manager, "A")

        result = await orchestrator.sync_all()

        bad = queue_store.get(bad_id)
        assert bad.attempts == 1
        assert bad.last_error.startswith("Failed to parse operation data")
        assert queue_store.get(ids["A"]).status == OperationStatus.SYNCED
        assert result.registrations_synced == 1
        assert result.registrations_failed == 1

    @pytest.mark.asyncio
    async def test_transient_network_defers(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        """Test items stay pending with no attempt counted when the network drops."""
        ids = await queue_registrations(queue_manager, "A", "B")
        await queue_manager.queue_verification(verification("V"))

        def drop(kind, items):
            mock_transport.is_online = False
            raise TransientNetworkError("Could not reach server")

        mock_transport.upload_batch.side_effect = drop

        result = await orchestrator.sync_all()

        for op_id in ids.values():
            item = queue_store.get(op_id)
            assert item.status == OperationStatus.PENDING
            assert item.attempts == 0
        assert result.deferred == 2
        assert result.total_failed == 0
        assert result.message == "Network connectivity lost during synchronization"
        assert mock_transport.upload_batch.await_count == 1

    @pytest.mark.asyncio
    async def test_server_rejects_batch(
        self, orchestrator, queue_manager, queue_store, mock_transport
    ):
        ids = await queue_registrations(queue_manager, "A", "B")
        mock_transport.upload_batch.side_effect = ServerError("Batch sync failed")

        result = await orchestrator.sync_all()

        for op_id in ids.values():
            item = queue_store.get(op_id)
            assert item.attempts == 1
            assert item.last_error == "Batch sync failed"
        assert result.registrations_failed == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(
        self, orchestrator, queue_manager, queue_store, mock_transport, bus
    ):
        ids = await queue_registrations(queue_manager, "A")
        mock_transport.upload_batch.side_effect = RuntimeError("boom")
        errors = []
        bus.subscribe(events.SYNC_ERROR, errors.append)

        result = await orchestrator.sync_all()

        assert result.success is False
        assert result.message == "Synchronization failed: boom"
        assert len(errors) == 1
        assert queue_store.get(ids["A"]).status == OperationStatus.PENDING


class TestGuards:
    """Test mutual exclusion and connectivity guards."""

    @pytest.mark.asyncio
    async def test_already_in_progress(self, orchestrator, gate, mock_transport):
        assert gate.try_acquire("other")

        result = await orchestrator.sync_all()

        assert result.success is False
        assert result.message == ALREADY_RUNNING_MESSAGE
        mock_transport.upload_batch.assert_not_awaited()
        gate.release()

    @pytest.mark.asyncio
    async def test_gate_released_after_cycle(self, orchestrator, gate):
        await orchestrator.sync_all()

        assert not gate.is_held

    @pytest.mark.asyncio
    async def test_force_sync_offline(self, orchestrator, queue_manager, mock_transport):
        await queue_registrations(queue_manager, "A")
        mock_transport.is_online = False

        result = await orchestrator.force_sync()

        assert result.success is False
        assert result.message == OFFLINE_MESSAGE
        mock_transport.upload_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trigger_rejected_while_held(self, orchestrator, gate):
        gate.try_acquire("manual")

        assert orchestrator.trigger("timer") is False
        gate.release()


class TestReferenceRefresh:
    """Test the reference data step of the cycle."""

    @pytest.mark.asyncio
    async def test_stale_cache_refreshed(self, orchestrator):
        cache = AsyncMock()
        cache.refresh_if_stale.return_value = RefreshResult(True, "Reference data refreshed")
        orchestrator.cache = cache

        result = await orchestrator.sync_all()

        assert result.references_refreshed is True
        cache.refresh_if_stale.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_fail_cycle(self, orchestrator):
        cache = AsyncMock()
        cache.refresh_if_stale.side_effect = RuntimeError("cache broken")
        orchestrator.cache = cache

        result = await orchestrator.sync_all()

        assert result.success is True
        assert result.errors == ["Reference data refresh failed: cache broken"]
