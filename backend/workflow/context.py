"""Per-execution context: data, scoped variables and resource handles.

- data: workflow-level outputs, global to every node (`_loopArray`, `apiResponse`, ...)
- variables: a stack of frames. Loop iterations push a frame binding `item`/`index`;
  lookups walk from the innermost frame outward.
- resources: opaque handles (browser page, db engines) that live as long as the
  execution unless a handler releases them.
"""

import asyncio
import inspect
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)

PAGE_RESOURCE = "page"
BROWSER_RESOURCE = "browser"
DB_RESOURCE_PREFIX = "db:"


class ExecutionContext:
    """Mutable store shared by the nodes of one workflow execution.

    Owned by exactly one Executor. Handlers read and write it only during
    their own execute() call.
    """

    def __init__(
        self,
        data: Optional[dict[str, Any]] = None,
        variables: Optional[dict[str, Any]] = None,
    ):
        self._data: dict[str, Any] = dict(data or {})
        self._frames: list[dict[str, Any]] = [dict(variables or {})]
        self._resources: dict[str, Any] = {}

    # ─── Data (global) ───

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self._data[key] = value

    def has_data(self, key: str) -> bool:
        return key in self._data

    def all_data(self) -> dict[str, Any]:
        return dict(self._data)

    # ─── Variables (scoped) ───

    def get_variable(self, key: str, default: Any = None) -> Any:
        for frame in reversed(self._frames):
            if key in frame:
                return frame[key]
        return default

    def has_variable(self, key: str) -> bool:
        return any(key in frame for frame in self._frames)

    def set_variable(self, key: str, value: Any) -> None:
        """Update the nearest frame defining `key`, else define it in the root frame."""
        for frame in reversed(self._frames):
            if key in frame:
                frame[key] = value
                return
        self._frames[0][key] = value

    def all_variables(self) -> dict[str, Any]:
        """Flattened view of every frame; inner frames shadow outer ones."""
        merged: dict[str, Any] = {}
        for frame in self._frames:
            merged.update(frame)
        return merged

    def push_scope(self, **bindings: Any) -> None:
        self._frames.append(dict(bindings))

    def pop_scope(self) -> dict[str, Any]:
        if len(self._frames) == 1:
            raise RuntimeError("Cannot pop the root variable scope")
        return self._frames.pop()

    @contextmanager
    def scope(self, **bindings: Any) -> Iterator["ExecutionContext"]:
        """Push a frame for the duration of a block (one loop iteration)."""
        self.push_scope(**bindings)
        try:
            yield self
        finally:
            self.pop_scope()

    @property
    def depth(self) -> int:
        """Number of pushed frames above the root."""
        return len(self._frames) - 1

    # ─── Resources ───

    def get_resource(self, key: str) -> Any:
        """Return a resource handle, or None when it was never acquired."""
        return self._resources.get(key)

    def set_resource(self, key: str, handle: Any) -> None:
        self._resources[key] = handle

    def release_resource(self, key: str) -> Any:
        return self._resources.pop(key, None)

    def get_page(self) -> Any:
        return self._resources.get(PAGE_RESOURCE)

    def get_browser(self) -> Any:
        return self._resources.get(BROWSER_RESOURCE)

    @property
    def db_connections(self) -> dict[str, Any]:
        return {
            key[len(DB_RESOURCE_PREFIX):]: handle
            for key, handle in self._resources.items()
            if key.startswith(DB_RESOURCE_PREFIX)
        }

    async def close_resources(self) -> None:
        """Close every resource handle still held and forget it.

        A handle stored under several keys is closed once.
        """
        closed: set[int] = set()
        for key in list(self._resources.keys()):
            handle = self._resources.pop(key)
            if id(handle) in closed:
                continue
            closed.add(id(handle))
            closer = None
            for name in ("aclose", "close", "dispose"):
                closer = getattr(handle, name, None)
                if callable(closer):
                    break
                closer = None
            if closer is None:
                continue
            try:
                result = closer()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Failed to close resource", resource=key, error=str(e))

    def reset(self) -> None:
        """Drop data and variables. Resources must be closed separately."""
        self._data.clear()
        self._frames = [{}]

    def snapshot(self) -> dict:
        """Serializable view for run results."""
        return {"data": self.all_data(), "variables": self.all_variables()}
