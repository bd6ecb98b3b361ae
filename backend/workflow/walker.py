"""Graph Walker: execution order, reachability and structural validation.

Ordering rules:
- Exactly one `start` node. Every edge endpoint must exist.
- Live nodes are those reachable from start over control-flow edges, plus the
  nodes that feed them through property-input edges (value nodes). Anything else
  is dead and never scheduled.
- The order is a depth-first topological sort over all live edges (dependencies
  first), seeded from start and then walked in declaration order.
- A property-input provider that feeds a loop body from outside the loop runs
  before the loop node.
- A control-flow edge from a loop's body back into the loop node is not a
  dependency, so loop bodies may re-enter their loop. Any other cycle is a
  GraphError.
"""

from collections import deque
from typing import Optional

from core.exceptions import GraphError
from workflow.graph import DEFAULT_HANDLE, LOOP_NODE_TYPE, START_NODE_TYPE, Graph


def reachable_from(graph: Graph, node_id: str, handle: Optional[str] = DEFAULT_HANDLE) -> list[str]:
    """Breadth-first walk over control-flow edges leaving (node_id, handle).

    Returns every transitively reachable node in discovery order. The origin is
    never included and is not expanded again if a path leads back to it.
    Passing handle=None follows every handle of the origin.
    """
    result: list[str] = []
    seen = {node_id}
    queue = deque(e.target for e in graph.outgoing(node_id, handle))

    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        result.append(current)
        for edge in graph.outgoing(current):
            if edge.target not in seen:
                queue.append(edge.target)

    return result


def _check_structure(graph: Graph) -> str:
    """Raise GraphError for a missing/duplicate start or a dangling edge; return the start id."""
    starts = graph.start_nodes()
    if not starts:
        raise GraphError("Workflow must contain a Start node")
    if len(starts) > 1:
        raise GraphError(
            f"Workflow must contain exactly one Start node, found {len(starts)}"
        )

    seen_ids: set[str] = set()
    for node in graph.nodes:
        if node.id in seen_ids:
            raise GraphError(f"Duplicate node id: {node.id}")
        seen_ids.add(node.id)

    for edge in graph.edges:
        for endpoint in (edge.source, edge.target):
            if not graph.has_node(endpoint):
                raise GraphError(f"Edge {edge.id} references unknown node: {endpoint}")

    return starts[0].id


def live_nodes(graph: Graph, start_id: str) -> set[str]:
    """Nodes reachable from start plus the property-input providers they depend on."""
    live = {start_id, *reachable_from(graph, start_id, None)}

    changed = True
    while changed:
        changed = False
        for edge in graph.property_edges():
            if edge.target in live and edge.source not in live:
                live.add(edge.source)
                changed = True

    return live


def _loop_back_edges(graph: Graph) -> set[str]:
    """Ids of control-flow edges that lead from a loop body back into its loop node."""
    back: set[str] = set()
    for node in graph.nodes:
        if node.type != LOOP_NODE_TYPE:
            continue
        body = set(reachable_from(graph, node.id, DEFAULT_HANDLE))
        for edge in graph.incoming(node.id):
            if edge.source in body:
                back.add(edge.id)
    return back


def _property_sources(graph: Graph, node_id: str) -> set[str]:
    """Every node that feeds node_id through property-input edges, transitively."""
    sources: set[str] = set()
    stack = [node_id]
    while stack:
        current = stack.pop()
        for edge in graph.property_edges():
            if edge.target == current and edge.source not in sources:
                sources.add(edge.source)
                stack.append(edge.source)
    return sources


def _loop_input_providers(graph: Graph, live: set[str]) -> dict[str, list[str]]:
    """Property-input providers that feed a loop body from outside the loop.

    The loop only re-runs its body, so these must run before the loop node.
    Providers that themselves depend on the loop's downstream nodes are left out.
    """
    providers: dict[str, list[str]] = {}
    for node in graph.nodes:
        if node.type != LOOP_NODE_TYPE or node.id not in live:
            continue
        downstream = {node.id, *reachable_from(graph, node.id, None)}
        body = set(reachable_from(graph, node.id, DEFAULT_HANDLE))
        found: list[str] = []
        for edge in graph.property_edges():
            if edge.target not in body or edge.source in downstream or edge.source not in live:
                continue
            if edge.source in found or _property_sources(graph, edge.source) & downstream:
                continue
            found.append(edge.source)
        providers[node.id] = found
    return providers


def _dependencies(graph: Graph, live: set[str]) -> dict[str, list[str]]:
    back_edges = _loop_back_edges(graph)
    deps: dict[str, list[str]] = {node_id: [] for node_id in graph.node_ids if node_id in live}
    for edge in graph.edges:
        if edge.id in back_edges:
            continue
        if edge.source not in live or edge.target not in live:
            continue
        if edge.source not in deps[edge.target]:
            deps[edge.target].append(edge.source)
    for loop_id, providers in _loop_input_providers(graph, live).items():
        for provider in providers:
            if provider not in deps[loop_id]:
                deps[loop_id].append(provider)
    return deps


def compute_execution_order(graph: Graph) -> list[str]:
    """Return live node ids in dependency order.

    Raises:
        GraphError: missing or duplicate start node, dangling edge reference,
            or a control-flow cycle that is not a loop back-edge.
    """
    start_id = _check_structure(graph)
    live = live_nodes(graph, start_id)
    deps = _dependencies(graph, live)

    visited: set[str] = set()
    visiting: set[str] = set()
    order: list[str] = []

    def visit(node_id: str) -> None:
        # Iterative DFS so deep graphs cannot hit the recursion limit
        stack: list[tuple[str, int]] = [(node_id, 0)]
        while stack:
            current, idx = stack.pop()
            if idx == 0:
                if current in visited:
                    continue
                if current in visiting:
                    raise GraphError(f"Circular dependency detected involving node: {current}")
                visiting.add(current)
            current_deps = deps.get(current, [])
            if idx < len(current_deps):
                stack.append((current, idx + 1))
                dep = current_deps[idx]
                if dep in visiting:
                    raise GraphError(f"Circular dependency detected involving node: {dep}")
                if dep not in visited:
                    stack.append((dep, 0))
                continue
            visiting.discard(current)
            visited.add(current)
            order.append(current)

    visit(start_id)
    for node_id in graph.node_ids:
        if node_id in live and node_id not in visited:
            visit(node_id)

    return order


def loop_body(graph: Graph, loop_node_id: str, order: Optional[list[str]] = None) -> list[str]:
    """Nodes reachable from a loop's output handle, in execution order."""
    body = set(reachable_from(graph, loop_node_id, DEFAULT_HANDLE))
    if order is None:
        order = compute_execution_order(graph)
    return [node_id for node_id in order if node_id in body]


def branch_nodes(graph: Graph, node_id: str, handles: list[str]) -> dict[str, set[str]]:
    """Map each handle of a branching node to the nodes reachable from it."""
    return {handle: set(reachable_from(graph, node_id, handle)) for handle in handles}


def validate(graph: Graph) -> list[str]:
    """Collect structural problems without raising.

    Multiple control-flow inputs into one node are reported but do not stop a
    run; execution of re-converging paths is allowed.
    """
    errors: list[str] = []
    try:
        compute_execution_order(graph)
    except GraphError as e:
        errors.append(e.message)

    back_edges = _loop_back_edges(graph) if not errors else set()
    counts: dict[str, int] = {}
    for edge in graph.control_edges():
        if edge.id in back_edges:
            continue
        counts[edge.target] = counts.get(edge.target, 0) + 1

    for node_id, count in counts.items():
        node = graph.get_node(node_id)
        if node and node.type != START_NODE_TYPE and count > 1:
            errors.append(f"Node {node_id} has multiple input connections (only one allowed)")

    return errors
