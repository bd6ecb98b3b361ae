"""
Base handler interface for all workflow node types.

Every node type (navigation, loop, database query, etc.) is executed by a
handler that implements `execute(node, context)`. Built-in handlers inherit
from BaseNodeHandler; plugin handlers only need a callable `execute`.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Protocol, runtime_checkable

import structlog

from core.exceptions import EngineError, ExecutionError
from workflow.context import ExecutionContext
from workflow.graph import Node

logger = structlog.get_logger(__name__)


@runtime_checkable
class NodeHandler(Protocol):
    """Capability every handler must satisfy."""

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        ...


class BaseNodeHandler(ABC):
    """
    Abstract base class for built-in node handlers.

    Subclasses must implement:
    - execute(node, context) -> None
    - node_type (class property)
    - display_name (class property)

    Handlers communicate only through the context: they read their
    configuration from `node.data` and write results with set_data /
    set_variable / set_resource.
    """

    node_type: str = "base"
    display_name: str = "Base Node"
    description: str = "Abstract base node"

    @abstractmethod
    async def execute(self, node: Node, context: ExecutionContext) -> None:
        """
        Execute the node.

        Args:
            node: The node being executed (property inputs already resolved)
            context: Execution context shared by every node of the run

        Raises:
            ExecutionError (or any exception) on failure
        """
        pass

    async def run(self, node: Node, context: ExecutionContext) -> None:
        """
        Run the handler with timing and error normalisation.

        This is the entry point called by the Executor. Engine errors pass
        through untouched; anything else is wrapped in ExecutionError.
        """
        start = time.monotonic()
        logger.debug(
            "Node starting",
            node_id=node.id,
            node_type=self.node_type,
        )
        try:
            await self.execute(node, context)
        except EngineError:
            raise
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.debug(
                "Node failed",
                node_id=node.id,
                node_type=self.node_type,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            raise ExecutionError(str(e), node_id=node.id, cause=e) from e

        logger.debug(
            "Node completed",
            node_id=node.id,
            node_type=self.node_type,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for node configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
