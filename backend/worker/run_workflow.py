"""Shared helper to execute one workflow outside the batch scheduler.

Both CLI-style callers and background threads need to run an Executor and
get a plain, JSON-safe result back. This module provides a single entry
point that:

1. Builds the graph and a fresh ExecutionContext
2. Runs the Executor
3. Returns status, error, duration and the final context as plain data

Usage from a synchronous context (thread / script)::

    from worker.run_workflow import run_workflow_sync
    result = run_workflow_sync(definition, variables={"rows": [1, 2]})

Usage from an async context::

    from worker.run_workflow import run_workflow_async
    result = await run_workflow_async(definition)
"""

import argparse
import asyncio
import json
import logging
import sys
import threading
import time
import traceback as tb_mod
from dataclasses import dataclass, field
from typing import Any, Optional

from app.config import get_settings
from core.logging_config import setup_logging
from tasks.registry import HandlerRegistry, get_handler_registry
from workflow.context import ExecutionContext
from workflow.events import EventSink
from workflow.executor import ExecutionStatus, Executor
from workflow.graph import Graph

logger = logging.getLogger(__name__)


# ── Serialization helper ────────────────────────────────────────

def _safe_serialize(obj, depth=0):
    """Recursively ensure all values are JSON-serializable."""
    if depth > 10:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    if isinstance(obj, str):
        return obj[:10000] if len(obj) > 10000 else obj
    if isinstance(obj, dict):
        return {str(k): _safe_serialize(v, depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_safe_serialize(v, depth + 1) for v in obj]
    return str(obj)


@dataclass
class WorkflowRunResult:
    """Outcome of one workflow run."""
    execution_id: str
    status: str
    error: Optional[str] = None
    duration_ms: float = 0.0
    data: dict = field(default_factory=dict)
    variables: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED.value

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "status": self.status,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "data": self.data,
            "variables": self.variables,
        }


# ── Core async runner ───────────────────────────────────────────

async def run_workflow_async(
    definition: Any,
    variables: Optional[dict] = None,
    sink: Optional[EventSink] = None,
    registry: Optional[HandlerRegistry] = None,
    execution_id: Optional[str] = None,
) -> WorkflowRunResult:
    """Run a workflow to a terminal state and return a JSON-safe result.

    Never raises for workflow failures; the error is reported in the result.
    """
    graph = definition if isinstance(definition, Graph) else Graph.from_dict(definition)
    context = ExecutionContext(variables=variables)
    executor = Executor(
        graph,
        registry or get_handler_registry(),
        sink=sink,
        context=context,
        execution_id=execution_id,
    )

    start = time.time()
    logger.info(f"[run-workflow] Starting {executor.execution_id}")

    error: Optional[str] = None
    try:
        await executor.run()
    except Exception as e:
        error = str(e) or type(e).__name__
        logger.error(f"[run-workflow] {executor.execution_id} failed: {error}")

    duration_ms = round((time.time() - start) * 1000, 2)
    snapshot = context.snapshot()
    try:
        data = _safe_serialize(snapshot["data"])
        variables_out = _safe_serialize(snapshot["variables"])
    except Exception as ser_err:
        logger.warning(f"[run-workflow] Serialize error: {ser_err}")
        data, variables_out = {"serialization_error": str(ser_err)}, {}

    status = executor.status.value
    logger.info(f"[run-workflow] {executor.execution_id}: {status} in {duration_ms}ms")

    return WorkflowRunResult(
        execution_id=executor.execution_id,
        status=status,
        error=error,
        duration_ms=duration_ms,
        data=data,
        variables=variables_out,
    )


# ── Sync wrappers ───────────────────────────────────────────────

def run_workflow_sync(
    definition: Any,
    variables: Optional[dict] = None,
    sink: Optional[EventSink] = None,
    registry: Optional[HandlerRegistry] = None,
) -> Optional[WorkflowRunResult]:
    """Run a workflow synchronously (blocks until done).

    Creates its own event loop — safe for threads.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(
            run_workflow_async(definition, variables=variables, sink=sink, registry=registry)
        )
    except Exception as e:
        logger.error(f"[run-workflow] sync wrapper error: {e}\n{tb_mod.format_exc()}")
        return None
    finally:
        loop.close()
        asyncio.set_event_loop(None)


def launch_workflow_thread(
    definition: Any,
    variables: Optional[dict] = None,
    sink: Optional[EventSink] = None,
) -> threading.Thread:
    """Launch workflow in a background daemon thread.

    Returns the thread object (already started).
    """
    t = threading.Thread(
        target=run_workflow_sync,
        args=(definition,),
        kwargs={"variables": variables, "sink": sink},
        daemon=True,
        name="wf-runner",
    )
    t.start()
    logger.info(f"[run-workflow] Launched thread {t.name}")
    return t


# ── Command line ────────────────────────────────────────────────

def main(argv: Optional[list] = None) -> int:
    """Run a workflow JSON file and print the result. Exit code 0 on success."""
    settings = get_settings()
    parser = argparse.ArgumentParser(description=f"{settings.APP_NAME}: run one workflow definition.")
    parser.add_argument("--version", action="version", version=settings.APP_VERSION)
    parser.add_argument("definition", help="Path to the workflow JSON file")
    parser.add_argument("--vars", default="{}", help="Initial variables as a JSON object")
    args = parser.parse_args(argv)

    setup_logging()
    with open(args.definition, encoding="utf-8") as f:
        definition = json.load(f)

    result = asyncio.run(run_workflow_async(definition, variables=json.loads(args.vars)))
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
