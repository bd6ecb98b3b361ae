"""Structured execution events and the sink interface that receives them.

The Executor and the Batch Scheduler never talk to a transport directly; they
are handed an EventSink at construction. `api.websockets.connection_manager`
provides the WebSocket implementation.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


class ExecutionEventType(str, Enum):
    """Single-workflow event types."""
    EXECUTION_START = "execution_start"
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_ERROR = "execution_error"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"


class BatchEventType(str, Enum):
    """Batch-level event types."""
    BATCH_START = "batch_start"
    BATCH_COMPLETE = "batch_complete"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ExecutionEvent:
    """One event in the ordered stream produced by an Executor."""
    type: ExecutionEventType
    execution_id: str
    node_id: Optional[str] = None
    message: Optional[str] = None
    trace_logs: Optional[list[str]] = None
    debug_info: Optional[dict[str, Any]] = None
    fail_silently: Optional[bool] = None
    data: Optional[dict[str, Any]] = None
    batch_id: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict:
        result = {
            "type": self.type.value,
            "executionId": self.execution_id,
            "timestamp": self.timestamp,
        }
        optional = {
            "nodeId": self.node_id,
            "message": self.message,
            "traceLogs": self.trace_logs,
            "debugInfo": self.debug_info,
            "failSilently": self.fail_silently,
            "data": self.data,
            "batchId": self.batch_id,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


@dataclass
class BatchEvent:
    """Batch lifecycle event."""
    type: BatchEventType
    batch_id: str
    status: str
    total_workflows: int = 0
    completed: int = 0
    failed: int = 0
    stopped: int = 0
    timestamp: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "batchId": self.batch_id,
            "status": self.status,
            "totalWorkflows": self.total_workflows,
            "completed": self.completed,
            "failed": self.failed,
            "stopped": self.stopped,
            "timestamp": self.timestamp,
        }


@runtime_checkable
class EventSink(Protocol):
    """Anything that accepts engine events."""

    async def emit(self, event: Any) -> None:
        ...


class NullEventSink:
    """Discards events."""

    async def emit(self, event: Any) -> None:
        return None


class CollectingEventSink:
    """Keeps every event in memory, in arrival order."""

    def __init__(self):
        self.events: list[Any] = []

    async def emit(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: Enum) -> list[Any]:
        return [e for e in self.events if e.type == event_type]

    def types(self) -> list[Enum]:
        return [e.type for e in self.events]
