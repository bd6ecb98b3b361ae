"""Template expressions and in-process script execution.

Templates look like {{ variables.counter + 1 }} or {{ data.apiResponse.body.items }}.
A string that is a single template evaluates to the raw value; a string with
embedded templates ("https://site/{{ variables.item }}") is interpolated.

Namespace available to expressions and scripts:
- data: workflow data (global)
- variables: flattened variables (inner loop scope wins)
- item / index: current loop binding, if any
- context: ContextProxy with get/set helpers (scripts only need this to mutate)
"""

import datetime
import json
import math
import re
from typing import Any

import structlog

from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

_SAFE_BUILTINS = {
    "True": True, "False": False, "None": None,
    "len": len, "int": int, "float": float, "str": str,
    "bool": bool, "list": list, "dict": dict, "abs": abs,
    "min": min, "max": max, "range": range, "round": round,
    "sum": sum, "any": any, "all": all, "sorted": sorted,
    "isinstance": isinstance,
}


class _DotDict(dict):
    """Dict that supports attribute-style access for eval expressions."""
    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            alt = name.replace('_', '-')
            if alt in self:
                return self[alt]
            raise AttributeError(f"No key '{name}' or '{alt}'")

    def __setattr__(self, name, value):
        self[name] = value


def _make_dot_dict(obj, _depth=0, _max_depth=50):
    """Recursively convert dicts to _DotDict for eval-friendly access."""
    if _depth >= _max_depth:
        return obj
    if isinstance(obj, dict) and not isinstance(obj, _DotDict):
        return _DotDict({k: _make_dot_dict(v, _depth + 1, _max_depth) for k, v in obj.items()})
    elif isinstance(obj, list):
        return [_make_dot_dict(item, _depth + 1, _max_depth) for item in obj]
    return obj


class ContextProxy:
    """Restricted view of an ExecutionContext handed to scripts and expressions."""

    def __init__(self, context: ExecutionContext):
        self._context = context

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._context.get_data(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self._context.set_data(key, value)

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self._context.get_variable(key, default)

    def set_variable(self, key: str, value: Any) -> None:
        self._context.set_variable(key, value)

    @property
    def data(self) -> dict:
        return self._context.all_data()

    @property
    def variables(self) -> dict:
        return self._context.all_variables()

    @property
    def page(self) -> Any:
        return self._context.get_page()


class ExpressionEvaluator:
    """Evaluates {{ }} templates against an ExecutionContext."""

    @staticmethod
    def build_namespace(context: ExecutionContext) -> dict:
        variables = context.all_variables()
        return _DotDict({
            "data": _make_dot_dict(context.all_data()),
            "variables": _make_dot_dict(variables),
            "item": _make_dot_dict(variables.get("item")),
            "index": variables.get("index"),
            "context": ContextProxy(context),
        })

    @staticmethod
    def evaluate_expression(expr: str, context: ExecutionContext) -> Any:
        """Evaluate a bare Python expression (no braces). Errors propagate."""
        namespace = ExpressionEvaluator.build_namespace(context)
        try:
            return ExpressionEvaluator._resolve_path(expr, namespace)
        except Exception:
            pass
        return eval(expr, {"__builtins__": _SAFE_BUILTINS}, namespace)

    @staticmethod
    def evaluate(expression: Any, context: ExecutionContext) -> Any:
        """Resolve a template string; non-strings and plain strings pass through.

        A template that fails to evaluate is returned unchanged and logged.
        """
        if not isinstance(expression, str) or "{{" not in expression:
            return expression

        stripped = expression.strip()
        whole = _TEMPLATE_RE.fullmatch(stripped)
        if whole:
            try:
                return ExpressionEvaluator.evaluate_expression(whole.group(1), context)
            except Exception as e:
                logger.warning("Expression eval failed", expression=expression, error=str(e))
                return expression

        def _replace(match: re.Match) -> str:
            try:
                value = ExpressionEvaluator.evaluate_expression(match.group(1), context)
            except Exception as e:
                logger.warning("Expression eval failed", expression=match.group(0), error=str(e))
                return match.group(0)
            if isinstance(value, (dict, list)):
                return json.dumps(value)
            return str(value)

        return _TEMPLATE_RE.sub(_replace, expression)

    @staticmethod
    def _resolve_path(path: str, namespace: dict) -> Any:
        """Resolve a dot-notation path like 'data.apiResponse.status'."""
        if any(c in path for c in "[]()!=<>+-*/ '\""):
            raise ValueError("Not a simple dot path")

        current: Any = namespace
        for part in path.split("."):
            if isinstance(current, dict):
                if part in current:
                    current = current[part]
                else:
                    raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
            elif isinstance(current, list):
                current = current[int(part)]
            elif hasattr(current, part):
                current = getattr(current, part)
            else:
                raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
        return current

    @staticmethod
    def resolve_config(config: dict, context: ExecutionContext) -> dict:
        """Recursively resolve all template expressions in a config dict."""
        resolved = {}
        for key, value in config.items():
            if isinstance(value, str):
                resolved[key] = ExpressionEvaluator.evaluate(value, context)
            elif isinstance(value, dict):
                resolved[key] = ExpressionEvaluator.resolve_config(value, context)
            elif isinstance(value, list):
                resolved[key] = [
                    ExpressionEvaluator.evaluate(v, context) if isinstance(v, str)
                    else ExpressionEvaluator.resolve_config(v, context) if isinstance(v, dict)
                    else v
                    for v in value
                ]
            else:
                resolved[key] = value
        return resolved

    @staticmethod
    def run_script(code: str, context: ExecutionContext) -> Any:
        """Execute Python statements against the context.

        The script may assign `result`; its value is returned. Exceptions propagate.
        """
        namespace = {
            "__builtins__": __builtins__,
            "context": ContextProxy(context),
            "data": context.all_data(),
            "variables": context.all_variables(),
            "json": json,
            "re": re,
            "math": math,
            "datetime": datetime,
            "result": None,
        }
        exec(compile(code, "<script>", "exec"), namespace)
        return namespace.get("result")


def to_number(value: Any, default: float = 0) -> float:
    """Coerce config values such as "1500" or 2.5 into numbers."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).strip()
        return int(text) if re.fullmatch(r"-?\d+", text) else float(text)
    except (TypeError, ValueError):
        return default
