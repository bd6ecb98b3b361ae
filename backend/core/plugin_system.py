"""Plugin system for extensible node types.

Allows loading custom node handlers from:
1. Python packages with entry points (flow_engine.handlers)
2. Local plugin directories (plugins/<name>/plugin.json)

Handlers only need a callable `execute(node, context)`; subclassing
BaseNodeHandler is optional.

Example plugin (as a package):
    # pyproject.toml
    [project.entry-points."flow_engine.handlers"]
    csvExport = "my_package.nodes:CsvExportHandler"

Example plugin (local):
    # plugins/reporting/plugin.json
    {
        "name": "reporting",
        "version": "1.0.0",
        "nodes": [{"type": "csvExport", "label": "CSV Export", "handlerPath": "handlers.py"}]
    }

    # plugins/reporting/handlers.py
    class CsvExportHandler:
        async def execute(self, node, context): ...
    HANDLERS = {"csvExport": CsvExportHandler}
"""

import importlib.metadata
import importlib.util
import inspect
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError

from app.config import get_settings
from tasks.registry import HandlerRegistry, is_valid_handler

logger = logging.getLogger(__name__)

MANIFEST_FILE = "plugin.json"


class PluginNodeDefinition(BaseModel):
    """One node type contributed by a plugin."""

    type: str = Field(min_length=1, description="Node type string")
    label: str = Field(default="", description="Display label")
    category: str = Field(default="plugin", description="Editor palette category")
    handler_path: str = Field(alias="handlerPath", description="Handler module, relative to the plugin dir")

    class Config:
        populate_by_name = True


class PluginManifest(BaseModel):
    """Contents of a local plugin's plugin.json."""

    name: str = Field(min_length=1, description="Plugin name")
    version: str = Field(min_length=1, description="Plugin version")
    description: str = Field(default="", description="Plugin description")
    author: str = Field(default="", description="Plugin author")
    nodes: List[PluginNodeDefinition] = Field(default=[], description="Node types provided")


class PluginInfo:
    """Metadata for a loaded plugin."""

    def __init__(
        self,
        name: str,
        version: str = "0.0.0",
        description: str = "",
        author: str = "",
        source: str = "unknown",
        handlers: Optional[dict] = None,
        path: Optional[str] = None,
        errors: Optional[list[str]] = None,
    ):
        self.name = name
        self.version = version
        self.description = description
        self.author = author
        self.source = source  # "entrypoint", "local"
        self.handlers = handlers or {}
        self.path = path
        self.enabled = True
        self.errors: list[str] = list(errors or [])

    @property
    def loaded(self) -> bool:
        return not self.errors


def _find_handler(module: Any, node_type: str) -> Any:
    """Find the handler for a node type in a plugin module.

    Looked up by node type attribute, then through a HANDLERS mapping, then
    as the only class in the module with an execute method.
    """
    handler = getattr(module, node_type, None)
    if handler is not None:
        return handler

    mapping = getattr(module, "HANDLERS", None)
    if isinstance(mapping, dict) and node_type in mapping:
        return mapping[node_type]

    candidates = [
        obj for _, obj in inspect.getmembers(module, inspect.isclass)
        if obj.__module__ == module.__name__ and callable(getattr(obj, "execute", None))
    ]
    if len(candidates) == 1:
        return candidates[0]
    return None


def _instantiate(handler: Any) -> Any:
    return handler() if inspect.isclass(handler) else handler


class PluginManager:
    """Manages plugin lifecycle: discovery, loading, registration."""

    def __init__(self, plugins_dir: Optional[str] = None, entry_point_group: Optional[str] = None):
        settings = get_settings()
        self.plugins_dir = Path(plugins_dir or settings.PLUGINS_DIR)
        self.entry_point_group = entry_point_group or settings.PLUGIN_ENTRY_POINT_GROUP
        self.plugins: dict[str, PluginInfo] = {}

    def discover_and_load(self) -> dict[str, PluginInfo]:
        """Discover and load all plugins from all sources."""
        logger.info("Discovering plugins...")

        # 1. Load from entry points (installed packages)
        self._load_entrypoint_plugins()

        # 2. Load from local plugins directory
        self._load_local_plugins()

        logger.info(
            "Plugin discovery complete: %d plugins loaded, %d node types available",
            len(self.plugins),
            len(self.get_handlers()),
        )
        return self.plugins

    def _load_entrypoint_plugins(self):
        """Load plugins registered via Python entry points."""
        try:
            eps = importlib.metadata.entry_points(group=self.entry_point_group)
        except Exception as e:
            logger.warning("Entry point discovery failed: %s", e)
            return

        for ep in eps:
            plugin_name = f"ep:{ep.name}"
            try:
                handler = _instantiate(ep.load())
                if not is_valid_handler(handler):
                    raise TypeError("handler has no callable execute()")

                info = PluginInfo(
                    name=ep.name,
                    source="entrypoint",
                    handlers={ep.name: handler},
                )
                if ep.dist:
                    info.version = ep.dist.version

                self.plugins[plugin_name] = info
                logger.info("Loaded entry point plugin: %s", ep.name)

            except Exception as e:
                logger.warning("Failed to load entry point %s: %s", ep.name, e)
                self.plugins[plugin_name] = PluginInfo(
                    name=ep.name,
                    source="entrypoint",
                    errors=[str(e)],
                )

    def _load_local_plugins(self):
        """Load plugins from the local plugins/ directory."""
        if not self.plugins_dir.exists():
            return

        for subdir in sorted(self.plugins_dir.iterdir()):
            if not subdir.is_dir() or subdir.name.startswith(("_", ".")):
                continue
            info = self.load_local_plugin(subdir)
            if info is not None:
                self.plugins[f"local:{subdir.name}"] = info

    def load_local_plugin(self, plugin_path: Path) -> Optional[PluginInfo]:
        """Load one plugin directory. Returns None when it has no manifest."""
        manifest_path = plugin_path / MANIFEST_FILE
        if not manifest_path.exists():
            return None

        try:
            manifest = PluginManifest(**json.loads(manifest_path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Invalid plugin manifest %s: %s", manifest_path, e)
            return PluginInfo(
                name=plugin_path.name,
                source="local",
                path=str(plugin_path),
                errors=[f"Invalid plugin manifest: {e}"],
            )

        info = PluginInfo(
            name=manifest.name,
            version=manifest.version,
            description=manifest.description,
            author=manifest.author,
            source="local",
            path=str(plugin_path),
        )

        modules: dict[str, Any] = {}
        for node_def in manifest.nodes:
            try:
                module = modules.get(node_def.handler_path)
                if module is None:
                    module = self._import_handler_module(plugin_path, manifest.name, node_def.handler_path)
                    modules[node_def.handler_path] = module

                handler_class = _find_handler(module, node_def.type)
                if handler_class is None:
                    raise LookupError(
                        f"No handler found for node type {node_def.type} in {node_def.handler_path}"
                    )
                handler = _instantiate(handler_class)
                if not is_valid_handler(handler):
                    raise TypeError("Handler does not implement execute()")
                info.handlers[node_def.type] = handler

            except Exception as e:
                info.errors.append(f"Failed to load handler for node type {node_def.type}: {e}")
                logger.warning("Failed to load handler %s from plugin %s: %s", node_def.type, manifest.name, e)

        if info.errors:
            # A partially loaded plugin contributes nothing
            info.handlers = {}
        else:
            logger.info("Loaded local plugin: %s (%d node types)", manifest.name, len(info.handlers))
        return info

    @staticmethod
    def _import_handler_module(plugin_path: Path, plugin_name: str, handler_path: str) -> Any:
        file_path = (plugin_path / handler_path).resolve()
        if file_path.suffix != ".py":
            file_path = file_path.with_suffix(".py")
        if not file_path.exists():
            raise FileNotFoundError(f"Handler module not found: {file_path}")

        module_name = f"flow_plugins.{plugin_name}.{file_path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import handler module: {file_path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def get_handlers(self) -> dict[str, Any]:
        """All handlers from enabled, successfully loaded plugins."""
        handlers: dict[str, Any] = {}
        for info in self.plugins.values():
            if info.enabled and info.loaded:
                handlers.update(info.handlers)
        return handlers

    def register_into(self, registry: HandlerRegistry) -> int:
        """Register every enabled plugin's handlers. Returns the number registered."""
        count = 0
        for key, info in self.plugins.items():
            if not info.enabled or not info.loaded or not info.handlers:
                continue
            try:
                count += registry.register_plugin_handlers(info.handlers, plugin_name=info.name)
            except Exception as e:
                info.errors.append(str(e))
                logger.warning("Failed to register plugin %s: %s", key, e)
        return count

    def get_plugin(self, name: str) -> Optional[PluginInfo]:
        """Get plugin info by key ("local:<dir>" / "ep:<name>") or plugin name."""
        if name in self.plugins:
            return self.plugins[name]
        for info in self.plugins.values():
            if info.name == name:
                return info
        return None

    def list_plugins(self) -> list[dict]:
        """List all discovered plugins with status."""
        return [
            {
                "name": info.name,
                "version": info.version,
                "description": info.description,
                "author": info.author,
                "source": info.source,
                "enabled": info.enabled,
                "loaded": info.loaded,
                "node_types": list(info.handlers.keys()),
                "errors": info.errors,
            }
            for info in self.plugins.values()
        ]

    def enable_plugin(self, name: str, registry: Optional[HandlerRegistry] = None) -> bool:
        """Enable a plugin, registering its handlers when a registry is given."""
        plugin = self.get_plugin(name)
        if not plugin:
            return False
        plugin.enabled = True
        if registry is not None and plugin.loaded and plugin.handlers:
            registry.register_plugin_handlers(plugin.handlers, plugin_name=plugin.name)
        return True

    def disable_plugin(self, name: str, registry: Optional[HandlerRegistry] = None) -> bool:
        """Disable a plugin (removes its node types from the registry)."""
        plugin = self.get_plugin(name)
        if not plugin:
            return False
        plugin.enabled = False
        if registry is not None:
            for node_type, handler in plugin.handlers.items():
                if registry.get(node_type) is handler:
                    registry.unregister(node_type)
        return True


# Singleton
_plugin_manager: Optional[PluginManager] = None


def get_plugin_manager() -> PluginManager:
    """Get or create the plugin manager for the configured plugin sources."""
    global _plugin_manager
    if _plugin_manager is None:
        _plugin_manager = PluginManager()
    return _plugin_manager
