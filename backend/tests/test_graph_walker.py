"""Tests for the graph model and the graph walker."""

import pytest

from core.exceptions import GraphError
from workflow.graph import EdgeKind, Graph
from workflow.walker import (
    branch_nodes,
    compute_execution_order,
    live_nodes,
    loop_body,
    reachable_from,
    validate,
)


# ─── Graph model ───

@pytest.mark.unit
class TestGraphModel:
    def test_from_dict_defaults(self):
        graph = Graph.from_dict({
            "nodes": [{"id": "a", "type": "start"}, {"id": "b", "type": "wait"}],
            "edges": [{"source": "a", "target": "b"}],
        })
        edge = graph.edges[0]
        assert edge.source_handle == "output"
        assert edge.target_handle == "input"
        assert edge.kind == EdgeKind.CONTROL
        assert graph.get_node("b").data == {}

    def test_property_edge_kind(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("v", "intValue"), ("w", "wait")],
            [("s", "w"), ("v", "w", "output", "value-input")],
        )
        prop = graph.property_edges()
        assert len(prop) == 1
        assert prop[0].property_name == "value"
        assert graph.property_edge_for("w", "value") is prop[0]
        assert [e.target for e in graph.control_edges()] == ["w"]

    def test_to_dict_roundtrip(self, build_graph):
        graph = build_graph([("s", "start"), ("a", "record", {"x": 1})], [("s", "a")])
        restored = Graph.from_dict(graph.to_dict())
        assert restored.node_ids == graph.node_ids
        assert restored.get_node("a").data == {"x": 1}
        assert restored.edges == graph.edges

    def test_node_flags(self, build_graph):
        graph = build_graph([("a", "record", {"failSilently": True, "bypass": True})])
        node = graph.get_node("a")
        assert node.fail_silently is True
        assert node.bypassed is True

    def test_bypass_requires_true(self, build_graph):
        graph = build_graph([("a", "record", {"bypass": "yes"})])
        assert graph.get_node("a").bypassed is False

    def test_with_data_copies(self, build_graph):
        graph = build_graph([("a", "record", {"x": 1})])
        node = graph.get_node("a")
        updated = node.with_data(x=2)
        assert updated.data["x"] == 2
        assert node.data["x"] == 1

    def test_source_handles_distinct_in_order(self, build_graph):
        graph = build_graph(
            [("sw", "switch"), ("a", "record"), ("b", "record"), ("c", "record")],
            [("sw", "a", "case-1"), ("sw", "b", "default"), ("sw", "c", "case-1")],
        )
        assert graph.source_handles("sw") == ["case-1", "default"]


# ─── Reachability ───

@pytest.mark.unit
class TestReachability:
    def test_reachable_from_handle(self, build_graph):
        graph = build_graph(
            [("sw", "switch"), ("a", "record"), ("b", "record"), ("c", "record")],
            [("sw", "a", "case-1"), ("a", "c"), ("sw", "b", "default")],
        )
        assert reachable_from(graph, "sw", "case-1") == ["a", "c"]
        assert reachable_from(graph, "sw", "default") == ["b"]
        assert sorted(reachable_from(graph, "sw", None)) == ["a", "b", "c"]

    def test_reachable_excludes_origin_on_cycle(self, build_graph):
        graph = build_graph(
            [("loop", "loop"), ("a", "record")],
            [("loop", "a"), ("a", "loop")],
        )
        assert reachable_from(graph, "loop") == ["a"]

    def test_branch_nodes(self, build_graph):
        graph = build_graph(
            [("sw", "switch"), ("a", "record"), ("b", "record")],
            [("sw", "a", "case-1"), ("sw", "b", "default")],
        )
        assert branch_nodes(graph, "sw", ["case-1", "default", "case-2"]) == {
            "case-1": {"a"},
            "default": {"b"},
            "case-2": set(),
        }

    def test_live_nodes_include_property_providers(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("w", "wait"), ("v", "intValue"), ("dead", "record")],
            [("s", "w"), ("v", "w", "output", "value-input")],
        )
        assert live_nodes(graph, "s") == {"s", "w", "v"}


# ─── Execution order ───

@pytest.mark.unit
class TestExecutionOrder:
    def test_linear_chain(self, build_graph):
        graph = build_graph(
            [("c", "record"), ("b", "record"), ("s", "start"), ("a", "record")],
            [("s", "a"), ("a", "b"), ("b", "c")],
        )
        assert compute_execution_order(graph) == ["s", "a", "b", "c"]

    def test_property_provider_runs_before_consumer(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("w", "record"), ("v", "intValue")],
            [("s", "w"), ("v", "w", "output", "value-input")],
        )
        order = compute_execution_order(graph)
        assert order.index("v") < order.index("w")
        assert order[0] == "s"

    def test_dead_nodes_not_scheduled(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("a", "record"), ("orphan", "record"), ("after", "record")],
            [("s", "a"), ("orphan", "after")],
        )
        assert compute_execution_order(graph) == ["s", "a"]

    def test_every_edge_respected(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("a", "record"), ("b", "record"), ("c", "record"), ("d", "record")],
            [("s", "a"), ("s", "b"), ("a", "c"), ("b", "c"), ("c", "d")],
        )
        order = compute_execution_order(graph)
        for edge in graph.edges:
            assert order.index(edge.source) < order.index(edge.target)
        assert len(order) == len(set(order))

    def test_missing_start(self, build_graph):
        graph = build_graph([("a", "record")])
        with pytest.raises(GraphError, match="Start"):
            compute_execution_order(graph)

    def test_duplicate_start(self, build_graph):
        graph = build_graph([("s1", "start"), ("s2", "start")])
        with pytest.raises(GraphError, match="exactly one"):
            compute_execution_order(graph)

    def test_dangling_edge(self, build_graph):
        graph = build_graph([("s", "start")], [("s", "ghost")])
        with pytest.raises(GraphError, match="unknown node"):
            compute_execution_order(graph)

    def test_cycle_rejected(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("a", "record"), ("b", "record")],
            [("s", "a"), ("a", "b"), ("b", "a")],
        )
        with pytest.raises(GraphError, match="Circular"):
            compute_execution_order(graph)

    def test_loop_back_edge_allowed(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("loop", "loop"), ("a", "record")],
            [("s", "loop"), ("loop", "a"), ("a", "loop")],
        )
        assert compute_execution_order(graph) == ["s", "loop", "a"]

    def test_loop_body_in_execution_order(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("loop", "loop"), ("b", "record"), ("a", "record")],
            [("s", "loop"), ("loop", "a"), ("a", "b")],
        )
        assert loop_body(graph, "loop") == ["a", "b"]

    def test_loop_body_provider_runs_before_loop(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("loop", "loop"), ("b", "record"), ("v", "intValue")],
            [("s", "loop"), ("loop", "b"), ("v", "b", "output", "count-input")],
        )
        assert compute_execution_order(graph) == ["s", "v", "loop", "b"]
        assert loop_body(graph, "loop") == ["b"]


@pytest.mark.unit
class TestValidate:
    def test_valid_graph(self, build_graph):
        graph = build_graph([("s", "start"), ("a", "record")], [("s", "a")])
        assert validate(graph) == []

    def test_collects_graph_error(self, build_graph):
        graph = build_graph([("a", "record")])
        errors = validate(graph)
        assert len(errors) == 1
        assert "Start" in errors[0]

    def test_reports_multiple_inputs(self, build_graph):
        graph = build_graph(
            [("s", "start"), ("a", "record"), ("b", "record"), ("c", "record")],
            [("s", "a"), ("s", "b"), ("a", "c"), ("b", "c")],
        )
        errors = validate(graph)
        assert any("multiple input connections" in e for e in errors)
