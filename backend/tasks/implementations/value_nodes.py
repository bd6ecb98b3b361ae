"""Value and script nodes.

Value nodes publish their value as a variable keyed by their own node id, so
property-input edges can feed it into other nodes. An optional `variableName`
publishes it under a readable name as well.
"""

from typing import Any, Dict

import structlog

from core.exceptions import ExecutionError
from tasks.base_task import BaseNodeHandler
from workflow.context import ExecutionContext
from workflow.expressions import ExpressionEvaluator
from workflow.graph import Node
from workflow.property_inputs import convert_for_source

logger = structlog.get_logger(__name__)


class _ValueNodeHandler(BaseNodeHandler):
    """Shared publish logic for intValue / stringValue / booleanValue / inputValue."""

    def convert(self, node: Node, value: Any) -> Any:
        return convert_for_source(value, node)

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        raw = ExpressionEvaluator.evaluate(node.data.get("value"), context)
        try:
            value = self.convert(node, raw)
        except (TypeError, ValueError) as e:
            raise ExecutionError(
                f"Invalid value for {self.node_type} node: {raw!r} ({e})", node_id=node.id
            ) from e

        context.set_variable(node.id, value)
        name = (node.data.get("variableName") or "").strip()
        if name:
            context.set_variable(name, value)
        context.set_data("value", value)


class IntValueHandler(_ValueNodeHandler):
    node_type = "intValue"
    display_name = "Integer Value"
    description = "Provide an integer to other nodes"


class StringValueHandler(_ValueNodeHandler):
    node_type = "stringValue"
    display_name = "String Value"
    description = "Provide a string to other nodes"


class BooleanValueHandler(_ValueNodeHandler):
    node_type = "booleanValue"
    display_name = "Boolean Value"
    description = "Provide a boolean to other nodes"


class InputValueHandler(_ValueNodeHandler):
    """Typed input; `dataType` is one of string, int, float, boolean, json."""

    node_type = "inputValue"
    display_name = "Input Value"
    description = "Provide a typed value to other nodes"

    def convert(self, node: Node, value: Any) -> Any:
        if node.data.get("dataType") in (None, ""):
            return "" if value is None else str(value)
        return convert_for_source(value, node)


class SetVariableHandler(BaseNodeHandler):
    """Assign a variable.

    Config:
        variableName: name to assign (required)
        value: literal or template ("{{ variables.counter + 1 }}")
    """

    node_type = "setVariable"
    display_name = "Set Variable"
    description = "Assign a workflow variable"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        name = (node.data.get("variableName") or "").strip()
        if not name:
            raise ExecutionError("Variable name is required for Set Variable node", node_id=node.id)
        value = node.data.get("value")
        if isinstance(value, (dict, list)):
            value = ExpressionEvaluator.resolve_config({"v": value}, context)["v"]
        else:
            value = ExpressionEvaluator.evaluate(value, context)
        context.set_variable(name, value)


class PythonCodeHandler(BaseNodeHandler):
    """Run Python statements against the execution context.

    Config:
        code: statements; `context`, `data` and `variables` are in scope.
              Assigning `result` stores it under data["result"].
    """

    node_type = "pythonCode"
    display_name = "Python Code"
    description = "Run a Python snippet with access to the workflow context"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        code = node.data.get("code")
        if not code:
            raise ExecutionError("Code is required for Python Code node", node_id=node.id)
        try:
            result = ExpressionEvaluator.run_script(code, context)
        except Exception as e:
            raise ExecutionError(f"Python execution error: {e}", node_id=node.id, cause=e) from e
        if result is not None:
            context.set_data("result", result)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["code"],
            "properties": {"code": {"type": "string"}},
        }


VALUE_NODE_TYPES = {
    "setVariable": SetVariableHandler,
    "intValue": IntValueHandler,
    "stringValue": StringValueHandler,
    "booleanValue": BooleanValueHandler,
    "inputValue": InputValueHandler,
    "pythonCode": PythonCodeHandler,
}
