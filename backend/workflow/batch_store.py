"""
Durable batch log.

Every batch and every execution inside it is written through to the
database so that a restart can tell which batches were interrupted.

Records:
- BatchRecord: status + progress counters of one batch
- ExecutionRef: one workflow run inside a batch

Counters obey, at all times:
    completed + running + queued + failed + stopped == total_workflows
"""

import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from db.models.batch import BatchExecutionModel, BatchRecordModel

logger = structlog.get_logger(__name__)


class BatchStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


ACTIVE_STATUSES = (BatchStatus.QUEUED.value, BatchStatus.RUNNING.value)
TERMINAL_STATUSES = (BatchStatus.COMPLETED.value, BatchStatus.FAILED.value, BatchStatus.STOPPED.value)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ExecutionRef:
    """One workflow execution inside a batch."""
    execution_id: str
    batch_id: str
    workflow_name: Optional[str] = None
    status: str = BatchStatus.QUEUED.value
    worker_id: Optional[int] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    error: Optional[str] = None
    sequence: int = 0

    @classmethod
    def from_model(cls, row: BatchExecutionModel) -> "ExecutionRef":
        return cls(
            execution_id=row.execution_id,
            batch_id=row.batch_id,
            workflow_name=row.workflow_name,
            status=row.status,
            worker_id=row.worker_id,
            start_time=row.start_time,
            end_time=row.end_time,
            error=row.error,
            sequence=row.sequence,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "batch_id": self.batch_id,
            "workflow_name": self.workflow_name,
            "status": self.status,
            "worker_id": self.worker_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "error": self.error,
        }


@dataclass
class BatchRecord:
    """Status and progress counters of one batch."""
    batch_id: str
    total_workflows: int
    status: str = BatchStatus.QUEUED.value
    completed: int = 0
    running: int = 0
    queued: int = 0
    failed: int = 0
    stopped: int = 0
    workers: int = 1
    priority: int = 0
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    error: Optional[str] = None
    executions: List[ExecutionRef] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def finished_count(self) -> int:
        return self.completed + self.failed + self.stopped

    def counters_consistent(self) -> bool:
        return (
            self.completed + self.running + self.queued + self.failed + self.stopped
            == self.total_workflows
        )

    @classmethod
    def from_model(
        cls, row: BatchRecordModel, executions: Optional[List[ExecutionRef]] = None
    ) -> "BatchRecord":
        return cls(
            batch_id=row.batch_id,
            total_workflows=row.total_workflows,
            status=row.status,
            completed=row.completed,
            running=row.running,
            queued=row.queued,
            failed=row.failed,
            stopped=row.stopped,
            workers=row.workers,
            priority=row.priority,
            start_time=row.start_time,
            end_time=row.end_time,
            error=row.error,
            executions=executions or [],
        )

    def to_dict(self, include_executions: bool = True) -> Dict[str, Any]:
        result = {
            "batch_id": self.batch_id,
            "status": self.status,
            "total_workflows": self.total_workflows,
            "completed": self.completed,
            "running": self.running,
            "queued": self.queued,
            "failed": self.failed,
            "stopped": self.stopped,
            "workers": self.workers,
            "priority": self.priority,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "error": self.error,
        }
        if include_executions:
            result["executions"] = [e.to_dict() for e in self.executions]
        return result


_COUNTER_FIELDS = ("completed", "running", "queued", "failed", "stopped")


class BatchStore:
    """Persists batch records and execution refs through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ─── Writes ───

    async def save_batch(self, record: BatchRecord) -> None:
        """Insert or fully update a batch row (executions are saved separately)."""
        async with self.session_factory() as session:
            row = await session.get(BatchRecordModel, record.batch_id)
            if row is None:
                row = BatchRecordModel(batch_id=record.batch_id)
                session.add(row)
            row.status = record.status
            row.total_workflows = record.total_workflows
            for name in _COUNTER_FIELDS:
                setattr(row, name, getattr(record, name))
            row.workers = record.workers
            row.priority = record.priority
            row.start_time = record.start_time
            row.end_time = record.end_time
            row.error = record.error
            await session.commit()

    async def save_execution(self, ref: ExecutionRef) -> None:
        async with self.session_factory() as session:
            row = await session.get(BatchExecutionModel, ref.execution_id)
            if row is None:
                row = BatchExecutionModel(execution_id=ref.execution_id, batch_id=ref.batch_id)
                session.add(row)
            row.workflow_name = ref.workflow_name
            row.status = ref.status
            row.worker_id = ref.worker_id
            row.start_time = ref.start_time
            row.end_time = ref.end_time
            row.error = ref.error
            row.sequence = ref.sequence
            await session.commit()

    async def mark_batch_stopped(self, batch_id: str, error: Optional[str] = None) -> Optional[BatchRecord]:
        """Move a batch and its unfinished executions to `stopped`.

        Running and queued counts are folded into `stopped`.
        """
        async with self.session_factory() as session:
            row = await session.get(BatchRecordModel, batch_id)
            if row is None:
                return None
            row.stopped = row.stopped + row.running + row.queued
            row.running = 0
            row.queued = 0
            row.status = BatchStatus.STOPPED.value
            row.end_time = row.end_time or now_ms()
            if error:
                row.error = error
            await session.execute(
                update(BatchExecutionModel)
                .where(
                    BatchExecutionModel.batch_id == batch_id,
                    BatchExecutionModel.status.in_(ACTIVE_STATUSES),
                )
                .values(status=BatchStatus.STOPPED.value, end_time=row.end_time)
            )
            await session.commit()
            record = BatchRecord.from_model(row)

        logger.info("Batch marked stopped", batch_id=batch_id, stopped=record.stopped)
        return record

    async def delete_batch(self, batch_id: str) -> bool:
        async with self.session_factory() as session:
            await session.execute(
                delete(BatchExecutionModel).where(BatchExecutionModel.batch_id == batch_id)
            )
            result = await session.execute(
                delete(BatchRecordModel).where(BatchRecordModel.batch_id == batch_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def cleanup_old_batches(self, retention_days: int) -> int:
        """Delete finished batches older than `retention_days`. Returns the number deleted."""
        cutoff = now_ms() - int(timedelta(days=retention_days).total_seconds() * 1000)
        async with self.session_factory() as session:
            result = await session.execute(
                select(BatchRecordModel.batch_id).where(
                    BatchRecordModel.status.in_(TERMINAL_STATUSES),
                    func.coalesce(BatchRecordModel.end_time, BatchRecordModel.start_time, 0) < cutoff,
                )
            )
            old_ids = [r[0] for r in result.all()]
            if old_ids:
                await session.execute(
                    delete(BatchExecutionModel).where(BatchExecutionModel.batch_id.in_(old_ids))
                )
                await session.execute(
                    delete(BatchRecordModel).where(BatchRecordModel.batch_id.in_(old_ids))
                )
                await session.commit()

        if old_ids:
            logger.info("Old batches cleaned up", count=len(old_ids), retention_days=retention_days)
        return len(old_ids)

    async def clear_all_batches(self) -> int:
        async with self.session_factory() as session:
            await session.execute(delete(BatchExecutionModel))
            result = await session.execute(delete(BatchRecordModel))
            await session.commit()
            return result.rowcount

    # ─── Reads ───

    async def get_batch(self, batch_id: str, include_executions: bool = True) -> Optional[BatchRecord]:
        async with self.session_factory() as session:
            row = await session.get(BatchRecordModel, batch_id)
            if row is None:
                return None
            executions = await self._executions(session, batch_id) if include_executions else []
            return BatchRecord.from_model(row, executions)

    async def get_batches(
        self,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[BatchRecord]:
        """Batches newest first, optionally filtered by status."""
        query = select(BatchRecordModel)
        if status:
            query = query.where(BatchRecordModel.status == status)
        query = query.order_by(
            BatchRecordModel.start_time.desc(), BatchRecordModel.batch_id
        ).limit(limit).offset(offset)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [BatchRecord.from_model(row) for row in result.scalars().all()]

    async def get_batch_executions(self, batch_id: str) -> List[ExecutionRef]:
        async with self.session_factory() as session:
            return await self._executions(session, batch_id)

    async def load_active_batches(self) -> List[BatchRecord]:
        """Batches persisted as running or queued, with their executions."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(BatchRecordModel).where(BatchRecordModel.status.in_(ACTIVE_STATUSES))
            )
            rows = result.scalars().all()
            return [
                BatchRecord.from_model(row, await self._executions(session, row.batch_id))
                for row in rows
            ]

    @staticmethod
    async def _executions(session, batch_id: str) -> List[ExecutionRef]:
        result = await session.execute(
            select(BatchExecutionModel)
            .where(BatchExecutionModel.batch_id == batch_id)
            .order_by(BatchExecutionModel.sequence)
        )
        return [ExecutionRef.from_model(row) for row in result.scalars().all()]
