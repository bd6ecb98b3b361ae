"""Workflow graph model: nodes, edges and the two edge kinds.

A workflow is the JSON document produced by the visual editor:

{
    "nodes": [
        {"id": "start-1", "type": "start", "data": {}},
        {"id": "loop-1", "type": "loop", "data": {"mode": "forEach", "arrayVariable": "rows"}},
        {"id": "int-1", "type": "intValue", "data": {"value": 5}},
        {"id": "wait-1", "type": "wait", "data": {"waitType": "timeout",
                                                   "_inputConnections": {"value": {"isInput": true}}}}
    ],
    "edges": [
        {"id": "e1", "source": "start-1", "target": "loop-1",
         "sourceHandle": "output", "targetHandle": "input"},
        {"id": "e2", "source": "int-1", "target": "wait-1",
         "sourceHandle": "output", "targetHandle": "value-input"}
    ]
}

Edges whose targetHandle ends in "-input" feed a single value into the named
property of the target node. Every other edge is a control-flow edge.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

PROPERTY_INPUT_SUFFIX = "-input"
DEFAULT_HANDLE = "output"
START_NODE_TYPE = "start"
LOOP_NODE_TYPE = "loop"
SWITCH_NODE_TYPE = "switch"


class EdgeKind(str, Enum):
    """The two disjoint edge kinds."""
    CONTROL = "control"
    PROPERTY = "property"


@dataclass(frozen=True)
class Node:
    """A typed unit of work. `data` is handler-specific configuration."""
    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def fail_silently(self) -> bool:
        return bool(self.data.get("failSilently", False))

    @property
    def bypassed(self) -> bool:
        return self.data.get("bypass") is True

    def with_data(self, **updates: Any) -> "Node":
        """Return a copy of this node with some data fields replaced."""
        return Node(id=self.id, type=self.type, data={**self.data, **updates})

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "data": dict(self.data)}


@dataclass(frozen=True)
class Edge:
    """A directed connection between two nodes."""
    id: str
    source: str
    target: str
    source_handle: str = DEFAULT_HANDLE
    target_handle: str = "input"

    @property
    def kind(self) -> EdgeKind:
        if self.target_handle and self.target_handle.endswith(PROPERTY_INPUT_SUFFIX):
            return EdgeKind.PROPERTY
        return EdgeKind.CONTROL

    @property
    def property_name(self) -> Optional[str]:
        """Name of the fed property for property-input edges ("value-input" -> "value")."""
        if self.kind != EdgeKind.PROPERTY:
            return None
        return self.target_handle[: -len(PROPERTY_INPUT_SUFFIX)]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        }


@dataclass(frozen=True)
class Graph:
    """Immutable workflow graph."""
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    name: Optional[str] = None

    def __post_init__(self):
        index = {}
        for node in self.nodes:
            index[node.id] = node
        object.__setattr__(self, "_index", index)

    @classmethod
    def from_dict(cls, definition: dict, name: Optional[str] = None) -> "Graph":
        """Build a graph from the editor JSON shape."""
        nodes = tuple(
            Node(id=str(n["id"]), type=str(n.get("type", "")), data=dict(n.get("data") or {}))
            for n in definition.get("nodes", [])
        )
        edges = []
        for i, e in enumerate(definition.get("edges", [])):
            edges.append(Edge(
                id=str(e.get("id") or f"edge-{i}"),
                source=str(e["source"]),
                target=str(e["target"]),
                source_handle=e.get("sourceHandle") or DEFAULT_HANDLE,
                target_handle=e.get("targetHandle") or "input",
            ))
        return cls(nodes=nodes, edges=tuple(edges), name=name or definition.get("name"))

    def to_dict(self) -> dict:
        result = {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }
        if self.name:
            result["name"] = self.name
        return result

    # ─── Lookups ───

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._index.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def start_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.type == START_NODE_TYPE]

    def control_edges(self) -> list[Edge]:
        return [e for e in self.edges if e.kind == EdgeKind.CONTROL]

    def property_edges(self) -> list[Edge]:
        return [e for e in self.edges if e.kind == EdgeKind.PROPERTY]

    def outgoing(self, node_id: str, handle: Optional[str] = None) -> list[Edge]:
        """Control-flow edges leaving a node, optionally restricted to one handle."""
        return [
            e for e in self.control_edges()
            if e.source == node_id and (handle is None or e.source_handle == handle)
        ]

    def incoming(self, node_id: str) -> list[Edge]:
        """Control-flow edges entering a node."""
        return [e for e in self.control_edges() if e.target == node_id]

    def property_edge_for(self, node_id: str, property_name: str) -> Optional[Edge]:
        handle = f"{property_name}{PROPERTY_INPUT_SUFFIX}"
        for edge in self.property_edges():
            if edge.target == node_id and edge.target_handle == handle:
                return edge
        return None

    def source_handles(self, node_id: str) -> list[str]:
        """Distinct control-flow handles used by a node's outgoing edges, in edge order."""
        handles: list[str] = []
        for edge in self.outgoing(node_id):
            if edge.source_handle not in handles:
                handles.append(edge.source_handle)
        return handles
