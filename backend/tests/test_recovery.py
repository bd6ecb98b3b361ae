"""Tests for startup reconciliation of interrupted batches."""

import pytest

from workflow.batch_store import BatchRecord, ExecutionRef
from workflow.recovery import INTERRUPTED_ERROR, RecoveryService


@pytest.mark.integration
class TestRecoveryService:
    async def test_nothing_to_recover(self, batch_store):
        service = RecoveryService(batch_store)
        assert await service.reconcile_interrupted_batches() == []
        assert service.get_recovery_log() == []

    async def test_interrupted_batch_rewritten_to_stopped(self, batch_store):
        await batch_store.save_batch(BatchRecord(
            batch_id="b1", total_workflows=4, status="running",
            running=2, queued=1, completed=1, start_time=1,
        ))
        for i, status in enumerate(["completed", "running", "running", "queued"]):
            await batch_store.save_execution(ExecutionRef(f"e{i}", "b1", status=status, sequence=i))
        await batch_store.save_batch(BatchRecord(
            batch_id="b2", total_workflows=1, status="completed", completed=1, start_time=1,
        ))

        service = RecoveryService(batch_store)
        results = await service.reconcile_interrupted_batches()

        assert len(results) == 1
        result = results[0]
        assert result.reconciled
        assert result.previous_status == "running"
        assert (result.running_stopped, result.queued_cancelled, result.executions_stopped) == (2, 1, 3)

        record = await batch_store.get_batch("b1")
        assert record.status == "stopped"
        assert (record.running, record.queued, record.stopped, record.completed) == (0, 0, 3, 1)
        assert record.error == INTERRUPTED_ERROR
        assert [e.status for e in record.executions] == ["completed", "stopped", "stopped", "stopped"]

        assert (await batch_store.get_batch("b2")).status == "completed"
        assert service.get_recovery_log()[0]["batch_id"] == "b1"

    async def test_second_scan_finds_nothing(self, batch_store):
        await batch_store.save_batch(BatchRecord(batch_id="b1", total_workflows=1, status="queued", queued=1))
        service = RecoveryService(batch_store)
        await service.reconcile_interrupted_batches()
        assert await service.reconcile_interrupted_batches() == []
