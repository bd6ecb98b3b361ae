"""Custom exceptions for the workflow execution engine."""

from typing import Optional


class EngineError(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class GraphError(EngineError):
    """Malformed workflow graph (missing start, dangling edge, cycle)."""

    def __init__(self, message: str = "Invalid workflow graph"):
        super().__init__(message)


class UnknownNodeType(EngineError):
    """No core or plugin handler is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No handler found for node type: {node_type}")


class ExecutionError(EngineError):
    """A node handler failed."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.node_id = node_id
        self.cause = cause
        super().__init__(message)


class LoopLimitExceeded(EngineError):
    """A doWhile loop hit its iteration limit while its condition still held.

    Always fatal: failSilently never converts it into a success.
    """

    def __init__(self, max_iterations: int, node_id: Optional[str] = None):
        self.max_iterations = max_iterations
        self.node_id = node_id
        super().__init__(f"Loop exceeded maximum iterations limit of {max_iterations}")


class RetryExhausted(EngineError):
    """All retry attempts failed, or an until-condition retry timed out."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class PluginLoadError(EngineError):
    """Plugin manifest or handler failed validation."""

    def __init__(self, message: str = "Plugin failed to load"):
        super().__init__(message)


class NotFoundError(EngineError):
    """Batch or execution not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)
