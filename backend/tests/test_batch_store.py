"""Tests for the durable batch log."""

import pytest

from workflow.batch_store import BatchRecord, BatchStatus, ExecutionRef, now_ms

DAY_MS = 24 * 60 * 60 * 1000


def _record(batch_id="b1", total=3, **kwargs):
    kwargs.setdefault("queued", total)
    kwargs.setdefault("start_time", now_ms())
    return BatchRecord(batch_id=batch_id, total_workflows=total, **kwargs)


@pytest.mark.unit
class TestBatchRecord:
    def test_counters_consistent(self):
        record = _record(total=4, queued=1, running=1, completed=1, failed=1)
        assert record.counters_consistent()
        assert record.finished_count == 2
        record.stopped = 1
        assert not record.counters_consistent()

    def test_to_dict_without_executions(self):
        data = _record().to_dict(include_executions=False)
        assert "executions" not in data
        assert data["status"] == "queued"


@pytest.mark.integration
class TestBatchStore:
    async def test_save_and_get(self, batch_store):
        await batch_store.save_batch(_record())
        for i in range(3):
            await batch_store.save_execution(
                ExecutionRef(execution_id=f"e{i}", batch_id="b1", workflow_name=f"wf-{i}", sequence=i)
            )

        record = await batch_store.get_batch("b1")
        assert record.total_workflows == 3
        assert record.queued == 3
        assert [e.execution_id for e in record.executions] == ["e0", "e1", "e2"]
        assert record.is_active

    async def test_save_batch_updates_existing(self, batch_store):
        record = _record()
        await batch_store.save_batch(record)
        record.status = BatchStatus.RUNNING.value
        record.queued, record.running = 2, 1
        await batch_store.save_batch(record)

        stored = await batch_store.get_batch("b1", include_executions=False)
        assert stored.status == "running"
        assert (stored.running, stored.queued) == (1, 2)

    async def test_mark_batch_stopped(self, batch_store):
        await batch_store.save_batch(_record(total=3, queued=1, running=1, completed=1, status="running"))
        await batch_store.save_execution(ExecutionRef("e0", "b1", status="completed", sequence=0))
        await batch_store.save_execution(ExecutionRef("e1", "b1", status="running", sequence=1))
        await batch_store.save_execution(ExecutionRef("e2", "b1", status="queued", sequence=2))

        record = await batch_store.mark_batch_stopped("b1", error="halted")

        assert record.status == "stopped"
        assert (record.running, record.queued, record.stopped, record.completed) == (0, 0, 2, 1)
        assert record.counters_consistent()
        statuses = [e.status for e in await batch_store.get_batch_executions("b1")]
        assert statuses == ["completed", "stopped", "stopped"]
        assert await batch_store.mark_batch_stopped("ghost") is None

    async def test_get_batches_filter_and_order(self, batch_store):
        base = now_ms()
        await batch_store.save_batch(_record("old", start_time=base - 1000))
        await batch_store.save_batch(_record("new", start_time=base))
        await batch_store.save_batch(_record("done", start_time=base - 500, status="completed", queued=0, completed=3))

        assert [b.batch_id for b in await batch_store.get_batches()] == ["new", "done", "old"]
        assert [b.batch_id for b in await batch_store.get_batches(status="queued")] == ["new", "old"]
        assert [b.batch_id for b in await batch_store.get_batches(limit=1, offset=1)] == ["done"]

    async def test_load_active_batches(self, batch_store):
        await batch_store.save_batch(_record("active", status="running"))
        await batch_store.save_batch(_record("finished", status="completed", queued=0, completed=3))
        active = await batch_store.load_active_batches()
        assert [b.batch_id for b in active] == ["active"]

    async def test_cleanup_old_batches(self, batch_store):
        old = now_ms() - 40 * DAY_MS
        await batch_store.save_batch(_record("old-done", status="completed", start_time=old, end_time=old))
        await batch_store.save_execution(ExecutionRef("x", "old-done", status="completed"))
        await batch_store.save_batch(_record("old-running", status="running", start_time=old))
        await batch_store.save_batch(_record("fresh-done", status="completed"))

        assert await batch_store.cleanup_old_batches(30) == 1
        assert await batch_store.get_batch("old-done") is None
        assert await batch_store.get_batch_executions("old-done") == []
        assert await batch_store.get_batch("old-running") is not None
        assert await batch_store.get_batch("fresh-done") is not None

    async def test_delete_and_clear(self, batch_store):
        await batch_store.save_batch(_record("a"))
        await batch_store.save_batch(_record("b"))
        assert await batch_store.delete_batch("a") is True
        assert await batch_store.delete_batch("a") is False
        assert await batch_store.clear_all_batches() == 1
        assert await batch_store.get_batches() == []
