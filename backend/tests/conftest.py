"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- File-backed async SQLite database in tmp_path
- BatchStore over that database
- Handler registry with a recording test handler
- Collecting event sink
- Graph builder helper
"""

import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RETRY_DEFAULT_DELAY_MS", "10")
os.environ.setdefault("RETRY_UNTIL_TIMEOUT_MS", "500")
os.environ.setdefault("NODE_DEFAULT_TIMEOUT_MS", "1000")
os.environ.setdefault("PLUGINS_DIR", "tests-plugins-not-present")

from db.database import close_db, create_db_engine, create_session_factory, init_db  # noqa: E402
from tasks.registry import HandlerRegistry  # noqa: E402
from workflow.batch_store import BatchStore  # noqa: E402
from workflow.events import CollectingEventSink  # noqa: E402
from workflow.graph import Graph  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Async engine over a fresh SQLite file for each test."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'batches.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest_asyncio.fixture
async def batch_store(db_engine) -> AsyncGenerator[BatchStore, None]:
    yield BatchStore(create_session_factory(db_engine))


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

class RecordingHandler:
    """Test handler: records each call, optionally fails or runs a hook.

    Config:
        fail: raise RuntimeError with this message
        setData: {key: value} written to context data
    """

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.hooks: dict[str, Any] = {}

    async def execute(self, node, context):
        self.calls.append({
            "node_id": node.id,
            "item": context.get_variable("item"),
            "index": context.get_variable("index"),
            "data": dict(node.data),
        })
        hook = self.hooks.get(node.id)
        if hook is not None:
            outcome = hook(node, context)
            if hasattr(outcome, "__await__"):
                await outcome
        for key, value in (node.data.get("setData") or {}).items():
            context.set_data(key, value)
        if node.data.get("fail"):
            raise RuntimeError(node.data["fail"])

    @property
    def order(self) -> list[str]:
        return [c["node_id"] for c in self.calls]


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def registry(recorder) -> HandlerRegistry:
    """Built-in handlers plus the "record" test node type."""
    reg = HandlerRegistry()
    reg.register("record", recorder, source="test")
    return reg


@pytest.fixture
def sink() -> CollectingEventSink:
    return CollectingEventSink()


def _build_graph(nodes, edges=(), name=None) -> Graph:
    """Build a graph from compact tuples.

    nodes: (id, type) or (id, type, data) tuples, or full dicts
    edges: (source, target) or (source, target, sourceHandle) or
           (source, target, sourceHandle, targetHandle) tuples
    """
    node_dicts = []
    for entry in nodes:
        if isinstance(entry, dict):
            node_dicts.append(entry)
            continue
        node_id, node_type, *rest = entry
        node_dicts.append({"id": node_id, "type": node_type, "data": rest[0] if rest else {}})

    edge_dicts = []
    for i, entry in enumerate(edges):
        source, target, *rest = entry
        edge = {"id": f"e{i}", "source": source, "target": target}
        if rest:
            edge["sourceHandle"] = rest[0]
        if len(rest) > 1:
            edge["targetHandle"] = rest[1]
        edge_dicts.append(edge)

    return Graph.from_dict({"nodes": node_dicts, "edges": edge_dicts, "name": name})


@pytest.fixture
def build_graph():
    return _build_graph
