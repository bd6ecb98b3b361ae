"""Workflow Executor — single-workflow control-flow state machine.

Takes a validated graph and runs its nodes one at a time against one
ExecutionContext, handling:

- Sequential execution in Graph Walker order
- Loops (forEach over an array, doWhile over a condition)
- Conditional branching (switch, with branch skipping)
- failSilently per node, bypassed nodes
- Cooperative stop between nodes
- Pause / resume at node boundaries, on request or at breakpoints
- Real-time progress through an injected EventSink

States: IDLE -> RUNNING <-> PAUSED, RUNNING -> COMPLETED | ERROR | STOPPED

Event stream for a successful run:
    EXECUTION_START, (NODE_START, NODE_COMPLETE)*, EXECUTION_COMPLETE
A failing node emits NODE_ERROR (trace logs + debug info) then EXECUTION_ERROR.
A stopped run emits nothing after the stop request.
A pause emits EXECUTION_PAUSED before the next node starts and
EXECUTION_RESUMED when released; stop() also releases a paused run.
"""

import asyncio
import time
import uuid
from dataclasses import replace
from enum import Enum
from typing import Any, Optional

import structlog

from app.config import Settings, get_settings
from core.exceptions import EngineError, ExecutionError, GraphError, LoopLimitExceeded
from core.logging_config import execution_log_context
from tasks.base_task import BaseNodeHandler
from tasks.implementations.control_nodes import (
    LOOP_ARRAY_KEY,
    LOOP_CONDITION_KEY,
    LOOP_MAX_ITERATIONS_KEY,
    LOOP_MODE_KEY,
    LOOP_SHOULD_START_KEY,
    LOOP_UPDATE_STEP_KEY,
    SWITCH_OUTPUT_KEY,
    SwitchHandler,
)
from tasks.registry import HandlerRegistry
from workflow.breakpoints import POST, PRE, BreakpointConfig
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.events import EventSink, ExecutionEvent, ExecutionEventType, NullEventSink
from workflow.expressions import ExpressionEvaluator
from workflow.graph import DEFAULT_HANDLE, LOOP_NODE_TYPE, SWITCH_NODE_TYPE, Graph, Node
from workflow.property_inputs import resolve_property_inputs
from workflow.walker import branch_nodes, compute_execution_order, loop_body

logger = structlog.get_logger(__name__)


class ExecutionStatus(str, Enum):
    """Lifecycle of one workflow run."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


class _StopRequested(Exception):
    """Unwinds the run at a node boundary after stop()."""


class _NodeFailure(Exception):
    """A node failure that was already reported with NODE_ERROR."""

    def __init__(self, node_id: str, error: BaseException):
        self.node_id = node_id
        self.error = error
        super().__init__(str(error))


class Executor:
    """Runs one workflow graph. An Executor instance runs at most once."""

    def __init__(
        self,
        graph: Graph,
        registry: HandlerRegistry,
        sink: Optional[EventSink] = None,
        context: Optional[ExecutionContext] = None,
        execution_id: Optional[str] = None,
        settings: Optional[Settings] = None,
        batch_id: Optional[str] = None,
        breakpoints: Optional[BreakpointConfig] = None,
    ):
        self.graph = graph
        self.registry = registry
        self.sink = sink or NullEventSink()
        self.context = context if context is not None else ExecutionContext()
        self.execution_id = execution_id or str(uuid.uuid4())
        self.batch_id = batch_id
        self.breakpoints = replace(breakpoints) if breakpoints else BreakpointConfig()
        self.settings = settings or get_settings()

        self.status = ExecutionStatus.IDLE
        self.current_node_id: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        self._order: list[str] = []
        self._stop_requested = False
        self._trace_logs: list[str] = []
        self._pause_requested = False
        self._skip_next = False
        self._resume = asyncio.Event()
        self._resume.set()
        self.paused_node_id: Optional[str] = None
        self.pause_reason: Optional[str] = None

    # ─── Public API ───

    def stop(self) -> None:
        """Request a stop. Observed at the next node boundary; a running handler is not interrupted."""
        if not self._stop_requested:
            logger.info("Stop requested", execution_id=self.execution_id, node_id=self.current_node_id)
        self._stop_requested = True
        self._resume.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def pause(self) -> None:
        """Request a pause before the next node starts."""
        if self.status in (ExecutionStatus.IDLE, ExecutionStatus.RUNNING):
            self._pause_requested = True

    def resume(self, skip_node: bool = False) -> bool:
        """Release a paused run. Returns False when the run is not paused.

        With skip_node, the node the run is paused in front of is completed
        without running. A pause after a node has no node to skip.
        """
        if self.status != ExecutionStatus.PAUSED:
            self._pause_requested = False
            return False
        self._skip_next = skip_node
        self._resume.set()
        return True

    def disable_breakpoints(self) -> None:
        """Turn breakpoints off for the rest of the run and release a current pause."""
        self.breakpoints.enabled = False
        self.resume()

    @property
    def is_paused(self) -> bool:
        return self.status == ExecutionStatus.PAUSED

    @property
    def duration_ms(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return round((end - self.started_at) * 1000, 2)

    async def run(self) -> ExecutionStatus:
        """Run the workflow to a terminal state.

        Returns:
            COMPLETED or STOPPED.

        Raises:
            GraphError: the graph is malformed; no node ran.
            EngineError: the failing node's error when the run ends in ERROR.
        """
        if self.status != ExecutionStatus.IDLE:
            raise RuntimeError(f"Executor {self.execution_id} has already run")

        with execution_log_context(self.execution_id, self.batch_id):
            return await self._run()

    async def _run(self) -> ExecutionStatus:
        self.status = ExecutionStatus.RUNNING
        self.started_at = time.monotonic()
        logger.info("Execution started", execution_id=self.execution_id, workflow=self.graph.name)

        try:
            try:
                self._order = compute_execution_order(self.graph)
            except GraphError as e:
                self.error = e
                self.status = ExecutionStatus.ERROR
                await self._emit(ExecutionEventType.EXECUTION_ERROR, message=e.message)
                logger.error("Invalid workflow graph", execution_id=self.execution_id, error=e.message)
                raise

            await self._emit(ExecutionEventType.EXECUTION_START)
            await self._run_sequence(self._order, set())

            self.status = ExecutionStatus.COMPLETED
            self.current_node_id = None
            await self._emit(ExecutionEventType.EXECUTION_COMPLETE, message="Execution completed")
            logger.info(
                "Execution completed",
                execution_id=self.execution_id,
                duration_ms=self.duration_ms,
            )
            return self.status

        except _StopRequested:
            self.status = ExecutionStatus.STOPPED
            logger.info("Execution stopped", execution_id=self.execution_id, node_id=self.current_node_id)
            return self.status

        except _NodeFailure as failure:
            self.error = failure.error
            self.status = ExecutionStatus.ERROR
            await self._emit(
                ExecutionEventType.EXECUTION_ERROR,
                node_id=failure.node_id,
                message=str(failure.error),
            )
            logger.error(
                "Execution failed",
                execution_id=self.execution_id,
                node_id=failure.node_id,
                error=str(failure.error),
            )
            raise failure.error

        finally:
            self.finished_at = time.monotonic()
            await self.context.close_resources()

    # ─── Sequencing ───

    async def _run_sequence(self, node_ids: list[str], inherited_skipped: set[str]) -> None:
        """Run nodes in order. Used for the whole workflow and for each loop iteration.

        Nodes consumed by a nested loop are added to `handled` so this
        sequence does not run them a second time.
        """
        skipped = set(inherited_skipped)
        handled: set[str] = set()
        for node_id in node_ids:
            if node_id in handled:
                continue
            await self._execute_node(node_id, skipped, handled)
            handled.add(node_id)
            if self.settings.SLOW_MO_MS > 0:
                await asyncio.sleep(self.settings.SLOW_MO_MS / 1000)

    def _check_stopped(self) -> None:
        if self._stop_requested:
            raise _StopRequested()

    async def _execute_node(self, node_id: str, skipped: set[str], handled: set[str]) -> None:
        self._check_stopped()
        node = self.graph.get_node(node_id)
        self.current_node_id = node_id

        if node_id in skipped:
            await self._emit(
                ExecutionEventType.NODE_COMPLETE,
                node_id=node_id,
                message="Node skipped (unreachable branch)",
            )
            return

        if node.bypassed:
            await self._emit(ExecutionEventType.NODE_COMPLETE, node_id=node_id, message="Node bypassed")
            return

        if self.breakpoints.should_trigger(node, PRE):
            self._pause_requested = False
            await self._wait_while_paused(node_id, "breakpoint", PRE)
        elif self._pause_requested:
            self._pause_requested = False
            await self._wait_while_paused(node_id, "user")
        if self._skip_next:
            self._skip_next = False
            await self._emit(
                ExecutionEventType.NODE_COMPLETE,
                node_id=node_id,
                message="Node skipped on resume",
            )
            return

        self._trace_logs = []
        await self._emit(ExecutionEventType.NODE_START, node_id=node_id)
        self._trace(f"Executing node {node_id} ({node.type})")

        try:
            resolved = resolve_property_inputs(node, self.graph, self.context, trace=self._trace)
            handler = self.registry.resolve(node.type)
            await self._invoke(handler, resolved)

            if node.type == LOOP_NODE_TYPE:
                await self._run_loop(resolved, skipped, handled)
            elif node.type == SWITCH_NODE_TYPE:
                self._apply_switch(resolved, skipped)

        except (_StopRequested, _NodeFailure):
            raise
        except Exception as e:
            await self._node_failed(node, e)
            if node.type == LOOP_NODE_TYPE:
                handled.update(loop_body(self.graph, node_id, self._order))
            return

        self._check_stopped()
        self._trace(f"Node {node_id} completed")
        await self._emit(ExecutionEventType.NODE_COMPLETE, node_id=node_id)
        self._trace_logs = []

        if self.breakpoints.should_trigger(node, POST):
            await self._wait_while_paused(node_id, "breakpoint", POST)
            self._skip_next = False

    async def _wait_while_paused(self, node_id: str, reason: str, timing: Optional[str] = None) -> None:
        """Hold the run at a node boundary until resume() or stop()."""
        self._check_stopped()
        self._resume.clear()
        self.status = ExecutionStatus.PAUSED
        self.paused_node_id = node_id
        self.pause_reason = reason
        data = {"reason": reason}
        if timing:
            data["breakpointAt"] = timing
        logger.info("Execution paused", execution_id=self.execution_id, node_id=node_id, reason=reason)
        await self._emit(
            ExecutionEventType.EXECUTION_PAUSED,
            node_id=node_id,
            message=f"Execution paused: {reason}",
            data=data,
        )

        await self._resume.wait()

        self.paused_node_id = None
        self.pause_reason = None
        self._check_stopped()
        self.status = ExecutionStatus.RUNNING
        await self._emit(ExecutionEventType.EXECUTION_RESUMED, node_id=node_id)

    async def _invoke(self, handler: Any, node: Node) -> None:
        if isinstance(handler, BaseNodeHandler):
            await handler.run(node, self.context)
            return
        try:
            await handler.execute(node, self.context)
        except EngineError:
            raise
        except Exception as e:
            raise ExecutionError(str(e), node_id=node.id, cause=e) from e

    async def _node_failed(self, node: Node, error: Exception) -> None:
        """Report a failing node. Returns when the failure is silenced, raises otherwise."""
        silent = node.fail_silently and not isinstance(error, LoopLimitExceeded)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        self._trace(f"Node {node.id} failed: {message}")

        if silent:
            logger.warning(
                "Node failed silently",
                execution_id=self.execution_id,
                node_id=node.id,
                error=message,
            )
            await self._emit(
                ExecutionEventType.NODE_ERROR,
                node_id=node.id,
                message=message,
                trace_logs=list(self._trace_logs),
                fail_silently=True,
            )
            self._trace_logs = []
            return

        await self._emit(
            ExecutionEventType.NODE_ERROR,
            node_id=node.id,
            message=message,
            trace_logs=list(self._trace_logs),
            debug_info=await self._debug_info(node),
            fail_silently=False,
        )
        raise _NodeFailure(node.id, error) from error

    async def _debug_info(self, node: Node) -> dict:
        info: dict[str, Any] = {"nodeId": node.id, "nodeType": node.type}
        selector = node.data.get("selector")
        if selector:
            info["selector"] = selector
            info["selectorType"] = node.data.get("selectorType") or "css"
        page = self.context.get_page()
        collect = getattr(page, "debug_info", None) if page is not None else None
        if callable(collect):
            try:
                info["page"] = await collect(selector, info.get("selectorType", "css"))
            except Exception as e:
                info["page"] = {"error": str(e)}
        return info

    # ─── Loops ───

    async def _run_loop(self, node: Node, skipped: set[str], handled: set[str]) -> None:
        body = loop_body(self.graph, node.id, self._order)
        mode = self.context.get_data(LOOP_MODE_KEY)

        if not body:
            self._trace(f"Loop node {node.id} has no child nodes to iterate")
        elif mode == "forEach":
            await self._run_for_each(node, body, skipped)
        elif mode == "doWhile":
            await self._run_do_while(node, body, skipped)
        else:
            raise ExecutionError(
                "Loop mode not set. Loop handler must execute before iteration.", node_id=node.id
            )

        handled.update(body)

    async def _run_for_each(self, node: Node, body: list[str], skipped: set[str]) -> None:
        array = list(self.context.get_data(LOOP_ARRAY_KEY) or [])
        self._trace(f"Loop node {node.id} (forEach) iterating over {len(array)} items")
        for index, item in enumerate(array):
            with self.context.scope(index=index, item=item):
                await self._run_sequence(body, skipped)

    async def _run_do_while(self, node: Node, body: list[str], skipped: set[str]) -> None:
        condition = self.context.get_data(LOOP_CONDITION_KEY)
        max_iterations = int(
            self.context.get_data(LOOP_MAX_ITERATIONS_KEY) or self.settings.LOOP_MAX_ITERATIONS
        )
        update_step = self.context.get_data(LOOP_UPDATE_STEP_KEY)

        if not self.context.get_data(LOOP_SHOULD_START_KEY):
            self._trace(f"Loop node {node.id} (doWhile) condition false initially, skipping body")
            return

        count = 0
        passed = True
        while passed and count < max_iterations:
            with self.context.scope(index=count):
                await self._run_sequence(body, skipped)
                if update_step:
                    try:
                        ExpressionEvaluator.run_script(update_step, self.context)
                    except Exception as e:
                        self._trace(f"Warning: loop update step failed: {e}")
            count += 1
            result = await ConditionEvaluator.evaluate(condition, self.context)
            passed = result.passed

        self._trace(f"Loop node {node.id} (doWhile) finished after {count} iterations")
        if passed:
            raise LoopLimitExceeded(max_iterations, node_id=node.id)

    # ─── Switch ───

    def _apply_switch(self, node: Node, skipped: set[str]) -> None:
        selected = self.context.get_data(SWITCH_OUTPUT_KEY)
        gated = SwitchHandler.gated_handles(node)
        for handle in self.graph.source_handles(node.id):
            if handle != DEFAULT_HANDLE and handle not in gated:
                gated.append(handle)

        branches = branch_nodes(self.graph, node.id, gated)
        ungated = [h for h in self.graph.source_handles(node.id) if h not in gated]
        keep: set[str] = set()
        for nodes in branch_nodes(self.graph, node.id, ungated).values():
            keep |= nodes
        if selected is not None:
            keep |= branches.get(selected, set())

        for handle, nodes in branches.items():
            if handle == selected:
                continue
            for skipped_id in nodes - keep:
                if skipped_id not in skipped:
                    skipped.add(skipped_id)
                    self._trace(f"Marking node {skipped_id} as skipped (unreachable from handle {handle})")

        self._trace(f"Switch node {node.id} selected handle: {selected}")

    # ─── Events & tracing ───

    def _trace(self, message: str) -> None:
        if self.settings.TRACE_LOGS:
            self._trace_logs.append(message)
        logger.debug(message, execution_id=self.execution_id)

    async def _emit(self, event_type: ExecutionEventType, **fields: Any) -> None:
        if self._stop_requested:
            return
        event = ExecutionEvent(
            type=event_type,
            execution_id=self.execution_id,
            batch_id=self.batch_id,
            **fields,
        )
        try:
            await self.sink.emit(event)
        except Exception as e:
            logger.warning(
                "Event sink failed",
                execution_id=self.execution_id,
                event_type=event_type.value,
                error=str(e),
            )
