"""
Batch Recovery Service.

Reconciles the durable batch log after a crash, restart or unexpected
shutdown. Executors do not survive a restart, so nothing is resumed.

Recovery flow:
1. On startup, load every batch persisted as "running" or "queued"
2. Rewrite it to "stopped", folding running + queued into the stopped counter
3. Rewrite its running / queued executions to "stopped"
4. Report what was reconciled

Nothing is re-queued.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from workflow.batch_store import BatchStore

logger = structlog.get_logger(__name__)

INTERRUPTED_ERROR = "Interrupted by engine restart"


class RecoveryResult:
    """Result of reconciling a single interrupted batch."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        self.previous_status: Optional[str] = None
        self.running_stopped: int = 0
        self.queued_cancelled: int = 0
        self.executions_stopped: int = 0
        self.reconciled: bool = False
        self.error: Optional[str] = None
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "previous_status": self.previous_status,
            "running_stopped": self.running_stopped,
            "queued_cancelled": self.queued_cancelled,
            "executions_stopped": self.executions_stopped,
            "reconciled": self.reconciled,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RecoveryService:
    """Rewrites interrupted batches to stopped on startup."""

    def __init__(self, store: BatchStore):
        self.store = store
        self._recovery_log: List[RecoveryResult] = []

    async def reconcile_interrupted_batches(self) -> List[RecoveryResult]:
        """
        Reconcile every batch left running or queued by a previous process.

        Called by BatchScheduler.start().
        Returns one result per batch found.
        """
        logger.info("Starting batch reconciliation scan...")

        active = await self.store.load_active_batches()
        if not active:
            logger.info("No interrupted batches found")
            return []

        results = []
        for record in active:
            result = RecoveryResult(record.batch_id)
            result.previous_status = record.status
            result.running_stopped = record.running
            result.queued_cancelled = record.queued
            result.executions_stopped = sum(1 for e in record.executions if e.status in ("running", "queued"))

            try:
                await self.store.mark_batch_stopped(record.batch_id, error=INTERRUPTED_ERROR)
                result.reconciled = True
                logger.info(
                    "Interrupted batch reconciled",
                    batch_id=record.batch_id,
                    previous_status=record.status,
                    running_stopped=record.running,
                    queued_cancelled=record.queued,
                )
            except Exception as e:
                result.error = str(e)
                logger.error("Batch reconciliation failed", batch_id=record.batch_id, error=str(e))

            self._recovery_log.append(result)
            results.append(result)

        logger.info(
            "Batch reconciliation complete",
            total=len(results),
            reconciled=sum(1 for r in results if r.reconciled),
        )
        return results

    def get_recovery_log(self) -> List[dict]:
        return [r.to_dict() for r in self._recovery_log]
