"""Breakpoint configuration: which nodes pause a run, and when.

    {"enabled": true, "breakpointAt": "pre" | "post" | "both",
     "breakpointFor": "all" | "marked"}

With "marked", only nodes whose data sets `breakpoint: true` pause the run.
"""

from dataclasses import dataclass
from typing import Optional

from workflow.graph import Node

PRE = "pre"
POST = "post"
BOTH = "both"


@dataclass
class BreakpointConfig:
    enabled: bool = False
    at: str = PRE
    nodes: str = "all"

    @classmethod
    def from_dict(cls, config: Optional[dict]) -> "BreakpointConfig":
        if not config:
            return cls()
        return cls(
            enabled=bool(config.get("enabled", False)),
            at=config.get("breakpointAt") or PRE,
            nodes=config.get("breakpointFor") or "all",
        )

    def should_trigger(self, node: Node, timing: str) -> bool:
        """True when the run must pause at `timing` ("pre" or "post") of this node."""
        if not self.enabled:
            return False
        if self.at != BOTH and self.at != timing:
            return False
        if self.nodes == "marked":
            return bool(node.data.get("breakpoint"))
        return True
