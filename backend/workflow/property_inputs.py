"""Property-input resolution.

A value node (intValue, stringValue, booleanValue, inputValue) publishes its
value as a variable keyed by its own node id. A consuming node marks a property
as fed in `_inputConnections` and is wired to the value node with an edge whose
targetHandle is "<property>-input". Before the consumer runs, the fed value is
read from the context, converted by the source node's type and written into a
copy of the consumer's data.
"""

import json
from typing import Any, Callable, Optional

import structlog

from workflow.context import ExecutionContext
from workflow.graph import Graph, Node

logger = structlog.get_logger(__name__)

INPUT_CONNECTIONS_KEY = "_inputConnections"

_TRUE_STRINGS = {"true", "1", "yes", "on"}


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    return int(float(str(value).strip()))


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _to_declared(value: Any, data_type: Optional[str]) -> Any:
    """Conversion for inputValue nodes, driven by their declared dataType."""
    if data_type in ("int", "integer"):
        return _to_int(value)
    if data_type in ("float", "double", "number"):
        return float(value)
    if data_type in ("bool", "boolean"):
        return _to_bool(value)
    if data_type in ("json", "object", "array") and isinstance(value, str):
        return json.loads(value)
    if data_type in ("string", "str"):
        return "" if value is None else str(value)
    return value


def convert_for_source(value: Any, source: Node) -> Any:
    """Convert a published value according to the type of the node that produced it."""
    if source.type == "intValue":
        return _to_int(value)
    if source.type == "stringValue":
        return "" if value is None else str(value)
    if source.type == "booleanValue":
        return _to_bool(value)
    if source.type == "inputValue":
        return _to_declared(value, source.data.get("dataType"))
    return value


def resolve_property_inputs(
    node: Node,
    graph: Graph,
    context: ExecutionContext,
    trace: Optional[Callable[[str], None]] = None,
) -> Node:
    """Return a copy of `node` with property-input values written into its data.

    Missing or unconvertible values only produce a trace warning; the property
    keeps whatever the node was authored with.
    """
    connections = node.data.get(INPUT_CONNECTIONS_KEY) or {}
    if not connections:
        return node

    def warn(message: str) -> None:
        logger.debug(message, node_id=node.id)
        if trace is not None:
            trace(f"Warning: {message}")

    updates: dict[str, Any] = {}
    for prop, meta in connections.items():
        if not isinstance(meta, dict) or not meta.get("isInput"):
            continue

        edge = graph.property_edge_for(node.id, prop)
        if edge is None:
            warn(f"No input connection found for property '{prop}'")
            continue

        source = graph.get_node(edge.source)
        if source is None or not context.has_variable(edge.source):
            warn(f"No value available from node {edge.source} for property '{prop}'")
            continue

        raw = context.get_variable(edge.source)
        try:
            updates[prop] = convert_for_source(raw, source)
        except (TypeError, ValueError) as e:
            warn(f"Could not convert value for property '{prop}': {e}")
            continue

        if trace is not None:
            trace(f"Property '{prop}' resolved from node {edge.source}: {updates[prop]!r}")

    if not updates:
        return node
    return node.with_data(**updates)
