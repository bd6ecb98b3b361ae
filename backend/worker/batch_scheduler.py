"""
Batch Scheduler — runs many workflows concurrently under a bounded worker pool.

Single process, in memory. The durable batch log (BatchStore) is written
through on every transition so that startup reconciliation can tell which
batches a crash interrupted.

Scheduling:
- Queue ordered by batch priority (higher first), then FIFO
- Global limit: max_workers running executions
- Per-batch limit: the batch's `workers`
- A workflow error never stops its siblings

Counters (per batch), at all times:
    completed + running + queued + failed + stopped == total_workflows
"""

import asyncio
import bisect
import itertools
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import structlog

from app.config import Settings, get_settings
from core.exceptions import NotFoundError
from tasks.registry import HandlerRegistry
from workflow.batch_store import BatchRecord, BatchStatus, BatchStore, ExecutionRef, now_ms
from workflow.events import BatchEvent, BatchEventType, EventSink, NullEventSink
from workflow.executor import ExecutionStatus, Executor
from workflow.graph import Graph
from workflow.recovery import RecoveryResult, RecoveryService

logger = structlog.get_logger(__name__)

WorkflowInput = Union[Graph, dict, Tuple[str, Union[Graph, dict]]]


@dataclass
class _ExecutionEntry:
    """In-memory bookkeeping for one execution of a batch."""
    ref: ExecutionRef
    executor: Executor
    task: Optional[asyncio.Task] = None
    stopped: bool = False


@dataclass
class _BatchState:
    record: BatchRecord
    done: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: set = field(default_factory=set)


class BatchScheduler:
    """Bounded worker pool over a priority queue of workflow executions."""

    def __init__(
        self,
        registry: HandlerRegistry,
        store: BatchStore,
        sink: Optional[EventSink] = None,
        max_workers: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.store = store
        self.sink = sink or NullEventSink()
        self.max_workers = max(1, max_workers or self.settings.MAX_WORKERS)

        self._lock = asyncio.Lock()
        # Sorted (-priority, sequence, batch_id, execution_id)
        self._queue: List[Tuple[int, int, str, str]] = []
        self._sequence = itertools.count()
        self._batches: Dict[str, _BatchState] = {}
        self._entries: Dict[str, _ExecutionEntry] = {}
        self._active_workers = 0
        self._batch_active: Dict[str, int] = {}
        self._next_worker_id = 1
        self._closed = False

    # ─── Lifecycle ───

    async def start(self) -> List[RecoveryResult]:
        """Reconcile batches interrupted by a previous process and purge expired ones."""
        results = await RecoveryService(self.store).reconcile_interrupted_batches()
        try:
            await self.store.cleanup_old_batches(self.settings.BATCH_RETENTION_DAYS)
        except Exception as e:
            logger.error("Batch retention cleanup failed", error=str(e))
        logger.info("Batch scheduler started", max_workers=self.max_workers, reconciled=len(results))
        return results

    async def shutdown(self) -> None:
        """Stop every active batch and wait for running executors to unwind."""
        self._closed = True
        await self.stop_all()
        tasks = [t for state in self._batches.values() for t in state.tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Batch scheduler shut down")

    # ─── Submission ───

    async def submit(
        self,
        workflows: Iterable[WorkflowInput],
        worker_count: Optional[int] = None,
        priority: int = 0,
        name_prefix: str = "workflow",
    ) -> str:
        """Queue a batch of workflows and start as many as the limits allow.

        Returns:
            The new batch id.
        """
        if self._closed:
            raise RuntimeError("Batch scheduler is shut down")

        items = self._normalize(workflows, name_prefix)
        if not items:
            raise ValueError("A batch needs at least one workflow")

        batch_id = str(uuid.uuid4())
        record = BatchRecord(
            batch_id=batch_id,
            total_workflows=len(items),
            status=BatchStatus.QUEUED.value,
            queued=len(items),
            workers=max(1, worker_count or self.max_workers),
            priority=priority,
            start_time=now_ms(),
        )

        async with self._lock:
            self._prune_finished_batches()
            state = _BatchState(record=record)
            self._batches[batch_id] = state
            self._batch_active[batch_id] = 0
            await self._save_batch(record)

            for sequence, (name, graph) in enumerate(items):
                execution_id = str(uuid.uuid4())
                ref = ExecutionRef(
                    execution_id=execution_id,
                    batch_id=batch_id,
                    workflow_name=name,
                    sequence=sequence,
                )
                executor = Executor(
                    graph,
                    self.registry,
                    sink=self.sink,
                    execution_id=execution_id,
                    settings=self.settings,
                    batch_id=batch_id,
                )
                self._entries[execution_id] = _ExecutionEntry(ref=ref, executor=executor)
                record.executions.append(ref)
                await self._save_execution(ref)
                bisect.insort(self._queue, (-priority, next(self._sequence), batch_id, execution_id))

            logger.info(
                "Batch submitted",
                batch_id=batch_id,
                total_workflows=record.total_workflows,
                workers=record.workers,
                priority=priority,
            )
            await self._emit_batch(BatchEventType.BATCH_START, record)
            await self._pump()

        return batch_id

    @staticmethod
    def _normalize(workflows: Iterable[WorkflowInput], name_prefix: str) -> List[Tuple[str, Graph]]:
        items = []
        for index, workflow in enumerate(workflows, start=1):
            name = None
            if isinstance(workflow, tuple):
                name, workflow = workflow
            if isinstance(workflow, dict):
                workflow = Graph.from_dict(workflow)
            if not isinstance(workflow, Graph):
                raise TypeError(f"Unsupported workflow input: {type(workflow).__name__}")
            items.append((name or workflow.name or f"{name_prefix}-{index}", workflow))
        return items

    # ─── Worker pool ───

    def _next_queued_index(self) -> Optional[int]:
        for index, (_, _, batch_id, _) in enumerate(self._queue):
            state = self._batches.get(batch_id)
            if state is None:
                continue
            if self._batch_active.get(batch_id, 0) < state.record.workers:
                return index
        return None

    async def _pump(self) -> None:
        """Start queued executions while both limits allow. Caller holds the lock."""
        while self._queue and self._active_workers < self.max_workers:
            index = self._next_queued_index()
            if index is None:
                break
            _, _, batch_id, execution_id = self._queue.pop(index)
            entry = self._entries.get(execution_id)
            state = self._batches.get(batch_id)
            if entry is None or state is None or entry.stopped:
                continue

            record = state.record
            worker_id = self._next_worker_id
            self._next_worker_id += 1
            self._active_workers += 1
            self._batch_active[batch_id] = self._batch_active.get(batch_id, 0) + 1

            record.status = BatchStatus.RUNNING.value
            record.queued -= 1
            record.running += 1
            entry.ref.status = BatchStatus.RUNNING.value
            entry.ref.worker_id = worker_id
            entry.ref.start_time = now_ms()

            await self._save_execution(entry.ref)
            await self._save_batch(record)

            logger.debug("Execution started", batch_id=batch_id, execution_id=execution_id, worker_id=worker_id)
            entry.task = asyncio.create_task(self._run_execution(entry), name=f"execution-{execution_id}")
            state.tasks.add(entry.task)
            entry.task.add_done_callback(state.tasks.discard)

    async def _run_execution(self, entry: _ExecutionEntry) -> None:
        error: Optional[str] = None
        try:
            status = await entry.executor.run()
            outcome = (
                BatchStatus.COMPLETED.value
                if status == ExecutionStatus.COMPLETED
                else BatchStatus.STOPPED.value
            )
        except asyncio.CancelledError:
            outcome = BatchStatus.STOPPED.value
            error = "Cancelled"
        except Exception as e:
            outcome = BatchStatus.FAILED.value
            error = str(e) or type(e).__name__

        try:
            await self._on_finished(entry, outcome, error)
        except Exception as e:
            logger.error("Completion bookkeeping failed", execution_id=entry.ref.execution_id, error=str(e))

    async def _on_finished(self, entry: _ExecutionEntry, outcome: str, error: Optional[str]) -> None:
        async with self._lock:
            batch_id = entry.ref.batch_id
            state = self._batches[batch_id]
            record = state.record

            self._active_workers -= 1
            self._batch_active[batch_id] = max(0, self._batch_active.get(batch_id, 0) - 1)
            self._entries.pop(entry.ref.execution_id, None)

            if not entry.stopped:
                entry.ref.status = outcome
                entry.ref.end_time = now_ms()
                entry.ref.error = error
                record.running -= 1
                if outcome == BatchStatus.COMPLETED.value:
                    record.completed += 1
                elif outcome == BatchStatus.FAILED.value:
                    record.failed += 1
                else:
                    record.stopped += 1
                await self._save_execution(entry.ref)

                if outcome == BatchStatus.FAILED.value:
                    logger.warning(
                        "Workflow failed in batch",
                        batch_id=batch_id,
                        execution_id=entry.ref.execution_id,
                        error=error,
                    )

                await self._finish_batch_if_done(state)
                await self._save_batch(record)

            await self._pump()

    async def _finish_batch_if_done(self, state: _BatchState) -> None:
        """Mark a batch completed / failed once every execution has finished. Caller holds the lock."""
        record = state.record
        if not record.is_active or record.finished_count < record.total_workflows:
            return
        record.status = BatchStatus.FAILED.value if record.failed > 0 else BatchStatus.COMPLETED.value
        record.end_time = now_ms()
        logger.info(
            "Batch finished",
            batch_id=record.batch_id,
            status=record.status,
            completed=record.completed,
            failed=record.failed,
            stopped=record.stopped,
        )
        await self._emit_batch(BatchEventType.BATCH_COMPLETE, record)
        state.done.set()

    # ─── Stopping ───

    async def stop_batch(self, batch_id: str) -> Dict[str, int]:
        """Stop running executions and drop queued ones.

        Raises:
            NotFoundError: the batch is unknown to memory and to the store.
        """
        async with self._lock:
            state = self._batches.get(batch_id)
            if state is None:
                return await self._stop_persisted_batch(batch_id)

            record = state.record
            if not record.is_active:
                return {"stopped_executions": 0, "running_stopped": 0, "queued_cancelled": 0}

            running_stopped = 0
            for entry in [e for e in self._entries.values() if e.ref.batch_id == batch_id]:
                if entry.ref.status == BatchStatus.RUNNING.value:
                    entry.executor.stop()
                    running_stopped += 1
                    await self._mark_entry_stopped(entry)

            queued_cancelled = 0
            remaining = []
            for item in self._queue:
                if item[2] != batch_id:
                    remaining.append(item)
                    continue
                entry = self._entries.pop(item[3], None)
                if entry is not None:
                    queued_cancelled += 1
                    await self._mark_entry_stopped(entry)
            self._queue = remaining

            record.running -= running_stopped
            record.queued -= queued_cancelled
            record.stopped += running_stopped + queued_cancelled
            record.status = BatchStatus.STOPPED.value
            record.end_time = now_ms()
            await self._save_batch(record)

            logger.info(
                "Batch stopped",
                batch_id=batch_id,
                running_stopped=running_stopped,
                queued_cancelled=queued_cancelled,
            )
            await self._emit_batch(BatchEventType.BATCH_COMPLETE, record)
            state.done.set()
            await self._pump()

        return {
            "stopped_executions": running_stopped + queued_cancelled,
            "running_stopped": running_stopped,
            "queued_cancelled": queued_cancelled,
        }

    async def _stop_persisted_batch(self, batch_id: str) -> Dict[str, int]:
        """Stop a batch known only to the store (e.g. left over from another process)."""
        persisted = await self.store.get_batch(batch_id, include_executions=False)
        if persisted is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        if not persisted.is_active:
            return {"stopped_executions": 0, "running_stopped": 0, "queued_cancelled": 0}
        await self.store.mark_batch_stopped(batch_id)
        return {
            "stopped_executions": persisted.running + persisted.queued,
            "running_stopped": persisted.running,
            "queued_cancelled": persisted.queued,
        }

    async def _mark_entry_stopped(self, entry: _ExecutionEntry) -> None:
        entry.stopped = True
        entry.ref.status = BatchStatus.STOPPED.value
        entry.ref.end_time = now_ms()
        await self._save_execution(entry.ref)

    async def stop_all(self) -> Dict[str, Any]:
        """Stop every active batch and return the aggregate counts."""
        active_ids = [bid for bid, state in self._batches.items() if state.record.is_active]
        batches = []
        running_stopped = 0
        queued_cancelled = 0
        for batch_id in active_ids:
            result = await self.stop_batch(batch_id)
            running_stopped += result["running_stopped"]
            queued_cancelled += result["queued_cancelled"]
            batches.append({"batch_id": batch_id, "stopped": result["stopped_executions"]})

        return {
            "total_batches": len(active_ids),
            "total_stopped": running_stopped + queued_cancelled,
            "running_stopped": running_stopped,
            "queued_cancelled": queued_cancelled,
            "batches": batches,
        }

    async def stop_execution(self, execution_id: str) -> Dict[str, bool]:
        """Stop one execution, running or queued.

        Raises:
            NotFoundError: no active execution has this id.
        """
        async with self._lock:
            entry = self._entries.get(execution_id)
            if entry is None or entry.stopped:
                raise NotFoundError(f"Execution {execution_id} not found")

            state = self._batches[entry.ref.batch_id]
            record = state.record
            was_running = entry.ref.status == BatchStatus.RUNNING.value
            was_queued = entry.ref.status == BatchStatus.QUEUED.value

            if was_running:
                entry.executor.stop()
                record.running -= 1
            elif was_queued:
                self._queue = [item for item in self._queue if item[3] != execution_id]
                self._entries.pop(execution_id, None)
                record.queued -= 1

            record.stopped += 1
            await self._mark_entry_stopped(entry)
            logger.info("Execution stopped", batch_id=record.batch_id, execution_id=execution_id, was_running=was_running)

            await self._finish_batch_if_done(state)
            await self._save_batch(record)
            await self._pump()

        return {"was_running": was_running, "was_queued": was_queued}

    def pause_execution(self, execution_id: str) -> None:
        """Pause one execution before its next node starts.

        Raises:
            NotFoundError: no active execution has this id.
        """
        self._active_executor(execution_id).pause()

    def resume_execution(self, execution_id: str, skip_node: bool = False) -> bool:
        """Release a paused execution. False when it is not paused."""
        return self._active_executor(execution_id).resume(skip_node=skip_node)

    def _active_executor(self, execution_id: str) -> Executor:
        entry = self._entries.get(execution_id)
        if entry is None or entry.stopped:
            raise NotFoundError(f"Execution {execution_id} not found")
        return entry.executor

    # ─── Queries ───

    async def get_batch_status(self, batch_id: str) -> Optional[Dict[str, Any]]:
        """In-memory snapshot of a batch, falling back to the store. None when unknown."""
        state = self._batches.get(batch_id)
        if state is not None:
            return state.record.to_dict()
        persisted = await self.store.get_batch(batch_id)
        return persisted.to_dict() if persisted else None

    def get_execution_status(self, execution_id: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(execution_id)
        if entry is None:
            return None
        return {
            "execution_id": execution_id,
            "batch_id": entry.ref.batch_id,
            "status": entry.ref.status,
            "current_node_id": entry.executor.current_node_id,
            "paused": entry.executor.is_paused,
        }

    def get_active_executions(self) -> List[Dict[str, Any]]:
        """Executions currently running or waiting in the queue."""
        return [
            {
                "execution_id": entry.ref.execution_id,
                "batch_id": entry.ref.batch_id,
                "workflow_name": entry.ref.workflow_name,
                "status": entry.ref.status,
                "worker_id": entry.ref.worker_id,
                "current_node_id": entry.executor.current_node_id,
            }
            for entry in self._entries.values()
            if not entry.stopped
        ]

    @property
    def active_workers(self) -> int:
        return self._active_workers

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    async def wait_for_batch(self, batch_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait until a batch is finished and its executors have unwound."""
        state = self._batches.get(batch_id)
        if state is None:
            status = await self.get_batch_status(batch_id)
            if status is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            return status

        await asyncio.wait_for(state.done.wait(), timeout)
        if state.tasks:
            await asyncio.wait_for(asyncio.gather(*list(state.tasks), return_exceptions=True), timeout)
        result = state.record.to_dict()
        self._prune_finished_batches()
        return result

    async def clear_batch(self, batch_id: str) -> bool:
        """Forget a finished batch in memory and delete it from the store.

        Returns False when neither knows the batch.

        Raises:
            ValueError: the batch is still queued or running.
        """
        async with self._lock:
            state = self._batches.get(batch_id)
            if state is not None and (state.record.is_active or state.tasks):
                raise ValueError(f"Batch {batch_id} is still active")
            self._batches.pop(batch_id, None)
            self._batch_active.pop(batch_id, None)
        deleted = await self.store.delete_batch(batch_id)
        return deleted or state is not None

    def _prune_finished_batches(self) -> None:
        """Drop finished batches older than the memory retention window; the store keeps them."""
        cutoff = now_ms() - self.settings.BATCH_MEMORY_RETENTION_SECONDS * 1000
        expired = [
            batch_id for batch_id, state in self._batches.items()
            if not state.record.is_active
            and not state.tasks
            and (state.record.end_time or 0) <= cutoff
        ]
        for batch_id in expired:
            del self._batches[batch_id]
            self._batch_active.pop(batch_id, None)
        if expired:
            logger.debug("Finished batches released from memory", count=len(expired))

    @property
    def tracked_batch_ids(self) -> List[str]:
        """Batches currently held in memory."""
        return list(self._batches)

    # ─── Persistence & events ───

    async def _save_batch(self, record: BatchRecord) -> None:
        try:
            await self.store.save_batch(record)
        except Exception as e:
            logger.error("Failed to persist batch", batch_id=record.batch_id, error=str(e))

    async def _save_execution(self, ref: ExecutionRef) -> None:
        try:
            await self.store.save_execution(ref)
        except Exception as e:
            logger.error("Failed to persist execution", execution_id=ref.execution_id, error=str(e))

    async def _emit_batch(self, event_type: BatchEventType, record: BatchRecord) -> None:
        event = BatchEvent(
            type=event_type,
            batch_id=record.batch_id,
            status=record.status,
            total_workflows=record.total_workflows,
            completed=record.completed,
            failed=record.failed,
            stopped=record.stopped,
        )
        try:
            await self.sink.emit(event)
        except Exception as e:
            logger.warning("Event sink failed", batch_id=record.batch_id, event_type=event_type.value, error=str(e))
