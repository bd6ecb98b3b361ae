"""Control-flow node handlers: start, wait, loop and switch.

Loop and switch handlers only evaluate their configuration and publish it to
the context; the Executor reads the published keys and drives iteration and
branch skipping itself.
"""

import asyncio
import time
from typing import Any, Dict

import structlog

from app.config import get_settings
from core.exceptions import ExecutionError
from tasks.base_task import BaseNodeHandler
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.expressions import ExpressionEvaluator, to_number
from workflow.graph import Node

logger = structlog.get_logger(__name__)

# Context keys the Executor reads after a loop/switch handler ran
LOOP_MODE_KEY = "_loopMode"
LOOP_ARRAY_KEY = "_loopArray"
LOOP_CONDITION_KEY = "_loopCondition"
LOOP_MAX_ITERATIONS_KEY = "_loopMaxIterations"
LOOP_UPDATE_STEP_KEY = "_loopUpdateStep"
LOOP_SHOULD_START_KEY = "_loopShouldStart"
SWITCH_OUTPUT_KEY = "switchOutput"
SWITCH_OUTPUT_LABEL_KEY = "switchOutputLabel"
DEFAULT_CASE_HANDLE = "default"

_CONDITION_POLL_SECONDS = 0.1


class StartHandler(BaseNodeHandler):
    """Entry point of every workflow. Does nothing."""

    node_type = "start"
    display_name = "Start"
    description = "Workflow entry point"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        return None


class WaitHandler(BaseNodeHandler):
    """Pause the workflow.

    Config:
        waitType: "timeout" | "selector" | "url" | "condition" (default: timeout)
        value: milliseconds for timeout; selector / URL pattern / expression otherwise
        condition: full condition object for waitType=condition (overrides value)
        selectorType: "css" | "xpath" | "text" (default: css)
        timeout: max wait in ms for non-timeout waits
    """

    node_type = "wait"
    display_name = "Wait"
    description = "Wait for a duration, element, URL or condition"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        wait_type = data.get("waitType") or "timeout"
        settings = get_settings()
        timeout_ms = to_number(
            ExpressionEvaluator.evaluate(data.get("timeout"), context),
            settings.NODE_DEFAULT_TIMEOUT_MS,
        ) or settings.NODE_DEFAULT_TIMEOUT_MS

        if wait_type == "timeout":
            raw = ExpressionEvaluator.evaluate(data.get("value"), context)
            duration = to_number(raw, default=None)
            if duration is None or duration < 0:
                raise ExecutionError("Invalid timeout value for Wait node", node_id=node.id)
            await asyncio.sleep(duration / 1000)
            return

        if wait_type == "condition":
            condition = data.get("condition") or {
                "type": "expression",
                "expression": data.get("value"),
            }
            await self._poll_condition(node, condition, context, timeout_ms)
            return

        page = context.get_page()
        if page is None:
            raise ExecutionError(f"Page is required for {wait_type} wait", node_id=node.id)

        value = ExpressionEvaluator.evaluate(str(data.get("value") or ""), context)
        if wait_type == "selector":
            await page.wait_for(
                value,
                selector_type=data.get("selectorType") or "css",
                state="visible",
                timeout=timeout_ms,
            )
        elif wait_type == "url":
            await page.wait_for_url(value, timeout=timeout_ms)
        else:
            raise ExecutionError(f"Unknown wait type: {wait_type}", node_id=node.id)

    @staticmethod
    async def _poll_condition(
        node: Node, condition: dict, context: ExecutionContext, timeout_ms: float
    ) -> None:
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            result = await ConditionEvaluator.evaluate(condition, context)
            if result.passed:
                return
            if time.monotonic() >= deadline:
                raise ExecutionError(
                    f"Wait condition not met within {int(timeout_ms)}ms: {result.message}",
                    node_id=node.id,
                )
            await asyncio.sleep(_CONDITION_POLL_SECONDS)


class LoopHandler(BaseNodeHandler):
    """Validate a loop configuration and publish it for the Executor.

    Config:
        mode: "forEach" | "doWhile" (required)
        arrayVariable: data key (or variable) holding the array (forEach)
        condition: condition object (doWhile)
        maxIterations: safety valve for doWhile (default: LOOP_MAX_ITERATIONS)
        updateStep: Python statements run after each doWhile iteration
    """

    node_type = "loop"
    display_name = "Loop"
    description = "Repeat the connected nodes for each item or while a condition holds"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        mode = data.get("mode")
        if not mode:
            raise ExecutionError(
                'Loop mode is required. Must be either "forEach" or "doWhile"', node_id=node.id
            )

        if mode == "forEach":
            name = data.get("arrayVariable")
            if not name:
                raise ExecutionError("Array variable is required for forEach mode", node_id=node.id)

            if context.has_data(name):
                array = context.get_data(name)
            elif context.has_variable(name):
                array = context.get_variable(name)
            else:
                array = ExpressionEvaluator.evaluate(name, context)

            if not isinstance(array, (list, tuple)):
                raise ExecutionError(f"Variable {name} is not an array", node_id=node.id)

            context.set_data(LOOP_ARRAY_KEY, list(array))
            context.set_data(LOOP_MODE_KEY, "forEach")
            return

        if mode == "doWhile":
            condition = data.get("condition")
            if not condition:
                raise ExecutionError("Condition is required for doWhile mode", node_id=node.id)

            max_iterations = int(to_number(
                ExpressionEvaluator.evaluate(data.get("maxIterations"), context),
                get_settings().LOOP_MAX_ITERATIONS,
            ) or get_settings().LOOP_MAX_ITERATIONS)

            context.set_data(LOOP_MODE_KEY, "doWhile")
            context.set_data(LOOP_CONDITION_KEY, condition)
            context.set_data(LOOP_MAX_ITERATIONS_KEY, max_iterations)
            context.set_data(LOOP_UPDATE_STEP_KEY, data.get("updateStep") or None)

            initial = await ConditionEvaluator.evaluate(condition, context)
            context.set_data(LOOP_SHOULD_START_KEY, initial.passed)
            return

        raise ExecutionError(
            f'Invalid loop mode: {mode}. Must be either "forEach" or "doWhile"', node_id=node.id
        )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["mode"],
            "properties": {
                "mode": {"type": "string", "enum": ["forEach", "doWhile"]},
                "arrayVariable": {"type": "string"},
                "condition": {"type": "object"},
                "maxIterations": {"type": "integer", "default": 1000},
                "updateStep": {"type": "string"},
            },
        }


class SwitchHandler(BaseNodeHandler):
    """Pick one outgoing branch.

    Config:
        cases: [{"id": "case-1", "label": "Has rows", "condition": {...}}, ...]
        defaultCase: {"label": "Otherwise"} (optional)

    The first case whose condition passes wins. Its id is published under
    `switchOutput`; with no match the output is "default" when a default case
    exists, otherwise None.
    """

    node_type = "switch"
    display_name = "Switch"
    description = "Route execution to the first matching case"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        cases = node.data.get("cases") or []
        selected = None
        label = None

        for case in cases:
            case_id = case.get("id")
            if not case_id:
                continue
            result = await ConditionEvaluator.evaluate(case.get("condition"), context)
            if result.passed:
                selected = case_id
                label = case.get("label") or case_id
                break

        if selected is None and node.data.get("defaultCase"):
            selected = DEFAULT_CASE_HANDLE
            default_case = node.data.get("defaultCase")
            label = default_case.get("label") if isinstance(default_case, dict) else None
            label = label or "Default"

        context.set_data(SWITCH_OUTPUT_KEY, selected)
        context.set_data(SWITCH_OUTPUT_LABEL_KEY, label)
        logger.debug("Switch evaluated", node_id=node.id, selected=selected)

    @staticmethod
    def gated_handles(node: Node) -> list[str]:
        """Handles whose branches are subject to selection."""
        handles = [c["id"] for c in node.data.get("cases") or [] if c.get("id")]
        handles.append(DEFAULT_CASE_HANDLE)
        return handles


CONTROL_NODE_TYPES = {
    "start": StartHandler,
    "wait": WaitHandler,
    "loop": LoopHandler,
    "switch": SwitchHandler,
}
