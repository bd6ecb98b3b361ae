"""Tests for the Batch Scheduler: worker limits, priority, stop and persistence."""

import asyncio

import pytest

from app.config import Settings
from core.exceptions import NotFoundError
from workflow.batch_store import BatchRecord
from workflow.events import BatchEventType, ExecutionEventType
from worker.batch_scheduler import BatchScheduler


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def workflow(build_graph):
    def make(node_id="a", **data):
        return build_graph([("s", "start"), (node_id, "record", data)], [("s", node_id)])
    return make


@pytest.fixture
def gate(recorder):
    """Blocks every "a" node until released."""
    event = asyncio.Event()

    async def hold(node, context):
        await event.wait()

    recorder.hooks["a"] = hold
    return event


@pytest.fixture
def scheduler(registry, batch_store, sink):
    return BatchScheduler(registry, batch_store, sink=sink, max_workers=4)


@pytest.mark.integration
class TestSubmission:
    async def test_batch_completes(self, scheduler, workflow, batch_store, sink, recorder):
        batch_id = await scheduler.submit([workflow(), workflow(), ("named", workflow())])
        status = await scheduler.wait_for_batch(batch_id, timeout=5)

        assert status["status"] == "completed"
        assert (status["completed"], status["running"], status["queued"]) == (3, 0, 0)
        assert len(recorder.calls) == 3
        assert [e["workflow_name"] for e in status["executions"]] == ["workflow-1", "workflow-2", "named"]

        batch_events = [e for e in sink.events if isinstance(e.type, BatchEventType)]
        assert [e.type for e in batch_events] == [BatchEventType.BATCH_START, BatchEventType.BATCH_COMPLETE]
        assert len(sink.of_type(ExecutionEventType.EXECUTION_COMPLETE)) == 3

        stored = await batch_store.get_batch(batch_id)
        assert stored.status == "completed"
        assert stored.counters_consistent()
        assert {e.status for e in stored.executions} == {"completed"}

    async def test_failure_does_not_stop_siblings(self, scheduler, workflow):
        batch_id = await scheduler.submit([workflow(), workflow(fail="boom"), workflow()])
        status = await scheduler.wait_for_batch(batch_id, timeout=5)

        assert status["status"] == "failed"
        assert (status["completed"], status["failed"]) == (2, 1)
        failed = [e for e in status["executions"] if e["status"] == "failed"]
        assert failed[0]["error"] == "boom"

    async def test_dict_workflows_accepted(self, scheduler, workflow):
        batch_id = await scheduler.submit([workflow().to_dict()])
        status = await scheduler.wait_for_batch(batch_id, timeout=5)
        assert status["completed"] == 1

    async def test_empty_batch_rejected(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.submit([])

    async def test_unknown_batch(self, scheduler):
        assert await scheduler.get_batch_status("ghost") is None
        with pytest.raises(NotFoundError):
            await scheduler.wait_for_batch("ghost")


@pytest.mark.integration
class TestLimits:
    async def test_per_batch_worker_limit(self, scheduler, workflow, recorder):
        running = {"now": 0, "max": 0}

        async def track(node, context):
            running["now"] += 1
            running["max"] = max(running["max"], running["now"])
            await asyncio.sleep(0.02)
            running["now"] -= 1

        recorder.hooks["a"] = track
        batch_id = await scheduler.submit([workflow() for _ in range(4)], worker_count=1)
        await scheduler.wait_for_batch(batch_id, timeout=5)
        assert running["max"] == 1

    async def test_two_workers_five_workflows_counters_hold(self, scheduler, workflow, recorder):
        running = {"now": 0, "max": 0}
        snapshots = []

        async def track(node, context):
            running["now"] += 1
            running["max"] = max(running["max"], running["now"])
            for batch_id in scheduler.tracked_batch_ids:
                snapshots.append(await scheduler.get_batch_status(batch_id))
            await asyncio.sleep(0.02)
            running["now"] -= 1

        recorder.hooks["a"] = track
        batch_id = await scheduler.submit([workflow() for _ in range(5)], worker_count=2)
        status = await scheduler.wait_for_batch(batch_id, timeout=5)

        assert running["max"] == 2
        assert status["completed"] == 5
        assert len(snapshots) == 5
        for snap in snapshots:
            total = sum(snap[k] for k in ("completed", "running", "queued", "failed", "stopped"))
            assert total == snap["total_workflows"] == 5
            assert snap["running"] <= 2

    async def test_global_worker_limit(self, registry, batch_store, workflow, gate):
        scheduler = BatchScheduler(registry, batch_store, max_workers=2)
        first = await scheduler.submit([workflow() for _ in range(3)], worker_count=3)
        second = await scheduler.submit([workflow()])

        await _wait_until(lambda: scheduler.active_workers == 2)
        await asyncio.sleep(0.02)
        assert scheduler.active_workers == 2
        assert scheduler.queue_length == 2

        gate.set()
        await scheduler.wait_for_batch(first, timeout=5)
        await scheduler.wait_for_batch(second, timeout=5)
        assert scheduler.active_workers == 0

    async def test_higher_priority_runs_first(self, registry, batch_store, workflow, recorder):
        release = asyncio.Event()

        async def hold(node, context):
            await release.wait()

        recorder.hooks["block"] = hold
        scheduler = BatchScheduler(registry, batch_store, max_workers=1)
        blocker = await scheduler.submit([workflow("block")])
        low = await scheduler.submit([workflow("low"), workflow("low")], priority=0)
        high = await scheduler.submit([workflow("high"), workflow("high")], priority=5)

        release.set()
        for batch_id in (blocker, low, high):
            await scheduler.wait_for_batch(batch_id, timeout=5)
        assert recorder.order == ["block", "high", "high", "low", "low"]


@pytest.mark.integration
class TestStopping:
    async def test_stop_batch(self, registry, batch_store, sink, workflow, recorder, gate):
        scheduler = BatchScheduler(registry, batch_store, sink=sink, max_workers=1)
        batch_id = await scheduler.submit([workflow() for _ in range(3)])
        await _wait_until(lambda: len(recorder.calls) == 1)

        result = await scheduler.stop_batch(batch_id)
        assert result == {"stopped_executions": 3, "running_stopped": 1, "queued_cancelled": 2}

        gate.set()
        status = await scheduler.wait_for_batch(batch_id, timeout=5)
        assert status["status"] == "stopped"
        assert (status["running"], status["queued"], status["stopped"]) == (0, 0, 3)
        assert {e["status"] for e in status["executions"]} == {"stopped"}
        assert len(recorder.calls) == 1

        complete = [e for e in sink.events if e.type == BatchEventType.BATCH_COMPLETE]
        assert complete[-1].status == "stopped"
        assert sink.of_type(ExecutionEventType.EXECUTION_COMPLETE) == []

        stored = await batch_store.get_batch(batch_id)
        assert stored.status == "stopped"
        assert stored.counters_consistent()

    async def test_stop_finished_batch_is_noop(self, scheduler, workflow):
        batch_id = await scheduler.submit([workflow()])
        await scheduler.wait_for_batch(batch_id, timeout=5)
        assert await scheduler.stop_batch(batch_id) == {
            "stopped_executions": 0, "running_stopped": 0, "queued_cancelled": 0,
        }

    async def test_stop_unknown_batch(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.stop_batch("ghost")

    async def test_stop_persisted_batch(self, scheduler, batch_store):
        await batch_store.save_batch(BatchRecord(
            batch_id="elsewhere", total_workflows=3, status="running", running=1, queued=2,
        ))
        result = await scheduler.stop_batch("elsewhere")
        assert result["stopped_executions"] == 3
        assert (await batch_store.get_batch("elsewhere")).status == "stopped"

    async def test_stop_queued_execution(self, registry, batch_store, workflow, recorder, gate):
        scheduler = BatchScheduler(registry, batch_store, max_workers=1)
        batch_id = await scheduler.submit([workflow(), workflow()])
        await _wait_until(lambda: len(recorder.calls) == 1)

        queued = [e for e in scheduler.get_active_executions() if e["status"] == "queued"]
        assert len(queued) == 1
        result = await scheduler.stop_execution(queued[0]["execution_id"])
        assert result == {"was_running": False, "was_queued": True}

        gate.set()
        status = await scheduler.wait_for_batch(batch_id, timeout=5)
        assert (status["completed"], status["stopped"]) == (1, 1)
        assert status["status"] == "completed"
        assert len(recorder.calls) == 1

    async def test_stop_running_execution(self, scheduler, workflow, recorder, gate):
        batch_id = await scheduler.submit([workflow()])
        await _wait_until(lambda: len(recorder.calls) == 1)

        running = scheduler.get_active_executions()[0]
        assert scheduler.get_execution_status(running["execution_id"])["current_node_id"] == "a"
        result = await scheduler.stop_execution(running["execution_id"])
        assert result == {"was_running": True, "was_queued": False}

        gate.set()
        status = await scheduler.wait_for_batch(batch_id, timeout=5)
        assert (status["stopped"], status["running"]) == (1, 0)

    async def test_stop_unknown_execution(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.stop_execution("ghost")

    async def test_stop_all_and_shutdown(self, scheduler, workflow, recorder, gate):
        first = await scheduler.submit([workflow(), workflow()])
        second = await scheduler.submit([workflow()])
        await _wait_until(lambda: len(recorder.calls) == 3)

        shutdown = asyncio.create_task(scheduler.shutdown())
        await _wait_until(lambda: scheduler.get_active_executions() == [])
        gate.set()
        await asyncio.wait_for(shutdown, 5)

        for batch_id in (first, second):
            status = await scheduler.get_batch_status(batch_id)
            assert status["status"] == "stopped"
            assert status["running"] == 0
        with pytest.raises(RuntimeError):
            await scheduler.submit([workflow()])

    async def test_pause_and_resume_execution(self, scheduler, build_graph, recorder, gate):
        graph = build_graph(
            [("s", "start"), ("a", "record"), ("b", "record")],
            [("s", "a"), ("a", "b")],
        )
        batch_id = await scheduler.submit([graph])
        await _wait_until(lambda: len(recorder.calls) == 1)
        execution_id = scheduler.get_active_executions()[0]["execution_id"]

        scheduler.pause_execution(execution_id)
        gate.set()
        await _wait_until(lambda: scheduler.get_execution_status(execution_id)["paused"])

        assert recorder.order == ["a"]
        assert (await scheduler.get_batch_status(batch_id))["running"] == 1

        assert scheduler.resume_execution(execution_id) is True
        status = await scheduler.wait_for_batch(batch_id, timeout=5)
        assert status["completed"] == 1
        assert recorder.order == ["a", "b"]

    async def test_pause_unknown_execution(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.pause_execution("ghost")
        with pytest.raises(NotFoundError):
            scheduler.resume_execution("ghost")


@pytest.mark.integration
class TestStartup:
    async def test_start_reconciles_interrupted_batches(self, scheduler, batch_store):
        await batch_store.save_batch(BatchRecord(
            batch_id="crashed", total_workflows=2, status="running", running=1, queued=1,
        ))
        results = await scheduler.start()

        assert [r.batch_id for r in results] == ["crashed"]
        record = await batch_store.get_batch("crashed")
        assert record.status == "stopped"
        assert record.stopped == 2


@pytest.mark.integration
class TestMemoryRetention:
    async def test_finished_batch_released_after_retention(self, registry, batch_store, workflow):
        scheduler = BatchScheduler(registry, batch_store, settings=Settings(BATCH_MEMORY_RETENTION_SECONDS=0))
        batch_id = await scheduler.submit([workflow(), workflow()])
        status = await scheduler.wait_for_batch(batch_id, timeout=5)

        assert status["status"] == "completed"
        assert batch_id not in scheduler.tracked_batch_ids
        stored = await scheduler.get_batch_status(batch_id)
        assert stored["status"] == "completed"
        assert [e["status"] for e in stored["executions"]] == ["completed", "completed"]

    async def test_finished_batch_kept_within_retention(self, scheduler, workflow):
        batch_id = await scheduler.submit([workflow()])
        await scheduler.wait_for_batch(batch_id, timeout=5)
        assert batch_id in scheduler.tracked_batch_ids

    async def test_clear_batch(self, scheduler, workflow, batch_store):
        batch_id = await scheduler.submit([workflow()])
        await scheduler.wait_for_batch(batch_id, timeout=5)

        assert await scheduler.clear_batch(batch_id) is True
        assert batch_id not in scheduler.tracked_batch_ids
        assert await batch_store.get_batch(batch_id) is None
        assert await scheduler.get_batch_status(batch_id) is None
        assert await scheduler.clear_batch(batch_id) is False

    async def test_clear_active_batch_rejected(self, scheduler, workflow, recorder, gate):
        batch_id = await scheduler.submit([workflow()])
        await _wait_until(lambda: len(recorder.calls) == 1)
        with pytest.raises(ValueError):
            await scheduler.clear_batch(batch_id)
        gate.set()
        await scheduler.wait_for_batch(batch_id, timeout=5)
