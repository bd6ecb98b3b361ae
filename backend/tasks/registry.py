"""
Handler Registry — Central registry for all available node handlers.

Maintains a mapping of node type strings to handler instances.
Built-in handlers are registered at construction; plugin handlers are
added through register_plugin_handlers().
"""

import inspect
from typing import Any, Dict, Mapping, Optional

import structlog

from core.exceptions import PluginLoadError, UnknownNodeType
from tasks.base_task import BaseNodeHandler
from tasks.implementations.browser_nodes import BROWSER_NODE_TYPES
from tasks.implementations.control_nodes import CONTROL_NODE_TYPES
from tasks.implementations.database_nodes import DATABASE_NODE_TYPES
from tasks.implementations.http_nodes import HTTP_NODE_TYPES
from tasks.implementations.value_nodes import VALUE_NODE_TYPES
from tasks.implementations.verify_nodes import VERIFY_NODE_TYPES

logger = structlog.get_logger(__name__)


def _instantiate(handler: Any) -> Any:
    """Accept a handler class or instance; classes are instantiated."""
    if inspect.isclass(handler):
        return handler()
    return handler


def is_valid_handler(handler: Any) -> bool:
    """A handler must expose a callable `execute`."""
    return callable(getattr(handler, "execute", None))


class HandlerRegistry:
    """Central registry for all node handler implementations."""

    def __init__(self, include_builtins: bool = True):
        self._handlers: Dict[str, Any] = {}
        self._sources: Dict[str, str] = {}
        if include_builtins:
            self._register_builtin_handlers()

    def _register_builtin_handlers(self):
        """Register all built-in node types."""
        # start, wait, loop, switch
        for node_type, handler_class in CONTROL_NODE_TYPES.items():
            self.register(node_type, handler_class)

        # setVariable, value nodes, pythonCode
        for node_type, handler_class in VALUE_NODE_TYPES.items():
            self.register(node_type, handler_class)

        # apiRequest
        for node_type, handler_class in HTTP_NODE_TYPES.items():
            self.register(node_type, handler_class)

        # verify
        for node_type, handler_class in VERIFY_NODE_TYPES.items():
            self.register(node_type, handler_class)

        # dbConnect, dbQuery, dbDisconnect
        for node_type, handler_class in DATABASE_NODE_TYPES.items():
            self.register(node_type, handler_class)

        # Browser automation (Playwright)
        for node_type, handler_class in BROWSER_NODE_TYPES.items():
            self.register(node_type, handler_class)

    def register(self, node_type: str, handler: Any, source: str = "core"):
        """Register (or replace) the handler for a node type."""
        instance = _instantiate(handler)
        if not is_valid_handler(instance):
            raise PluginLoadError(f"Handler for '{node_type}' has no callable execute()")
        self._handlers[node_type] = instance
        self._sources[node_type] = source

    def unregister(self, node_type: str) -> bool:
        self._sources.pop(node_type, None)
        return self._handlers.pop(node_type, None) is not None

    def has(self, node_type: str) -> bool:
        return node_type in self._handlers

    def get(self, node_type: str) -> Optional[Any]:
        """Get a handler by type string, or None."""
        return self._handlers.get(node_type)

    def resolve(self, node_type: str) -> Any:
        """Get a handler by type string.

        Raises:
            UnknownNodeType: nothing is registered for the type.
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeType(node_type)
        return handler

    def register_plugin_handlers(self, handlers: Mapping[str, Any], plugin_name: str = "plugin") -> int:
        """Register a validated {node_type: handler} mapping from a plugin.

        Every entry is checked before any is registered, so a bad plugin
        leaves the registry untouched.

        Raises:
            PluginLoadError: an entry does not satisfy the handler capability.
        """
        instances = {}
        for node_type, handler in handlers.items():
            try:
                instance = _instantiate(handler)
            except Exception as e:
                raise PluginLoadError(
                    f"Plugin '{plugin_name}' handler for '{node_type}' could not be created: {e}"
                ) from e
            if not is_valid_handler(instance):
                raise PluginLoadError(
                    f"Plugin '{plugin_name}' handler for '{node_type}' has no callable execute()"
                )
            instances[node_type] = instance

        for node_type, instance in instances.items():
            if node_type in self._handlers and self._sources.get(node_type) == "core":
                logger.warning(
                    "Plugin overrides built-in handler",
                    node_type=node_type,
                    plugin=plugin_name,
                )
            self._handlers[node_type] = instance
            self._sources[node_type] = plugin_name
        return len(instances)

    def list_all(self) -> list:
        """List all registered node types with metadata."""
        result = []
        for node_type, handler in self._handlers.items():
            is_builtin = isinstance(handler, BaseNodeHandler)
            result.append({
                "node_type": node_type,
                "display_name": getattr(handler, "display_name", node_type),
                "description": getattr(handler, "description", ""),
                "source": self._sources.get(node_type, "core"),
                "config_schema": handler.get_config_schema() if is_builtin else {},
            })
        return result

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())


# Singleton
_registry: Optional[HandlerRegistry] = None


def get_handler_registry() -> HandlerRegistry:
    """Get or create the singleton handler registry.

    On first use, plugins from the configured entry point group and plugins
    directory are discovered and registered over the built-ins.
    """
    global _registry
    if _registry is None:
        from core.plugin_system import get_plugin_manager

        registry = HandlerRegistry()
        manager = get_plugin_manager()
        manager.discover_and_load()
        count = manager.register_into(registry)
        if count:
            logger.info("Plugin handlers registered", count=count)
        _registry = registry
    return _registry
