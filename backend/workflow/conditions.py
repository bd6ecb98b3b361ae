"""Condition evaluation for switch cases, doWhile loops, wait nodes and retry-until.

Condition shapes (node config, camelCase as authored in the editor):

    {"type": "variable", "variableName": "counter",
     "comparisonOperator": "lessThan", "comparisonValue": 5}
    {"type": "expression", "expression": "variables.counter < 5"}      # alias: "javascript"
    {"type": "api-status", "apiContextKey": "apiResponse", "statusCode": 200}
    {"type": "api-json-path", "jsonPath": "data.items[0].id",
     "expectedValue": "42", "matchType": "equals"}
    {"type": "ui-element", "selector": "#submit", "elementCheck": "visible"}

Evaluation never raises: unknown types and internal errors yield passed=False.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from workflow.context import ExecutionContext
from workflow.expressions import ExpressionEvaluator

logger = structlog.get_logger(__name__)

MATCH_TYPES = ("equals", "contains", "startsWith", "endsWith", "regex")
COMPARISON_OPERATORS = (
    "equals", "greaterThan", "lessThan", "greaterThanOrEqual", "lessThanOrEqual",
)


@dataclass
class ConditionResult:
    """Outcome of a single condition check."""
    passed: bool
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


# ─── Helpers ──────────────────────────────────────────────────

_PATH_TOKEN_RE = re.compile(r"[^.\[\]]+|\[(\d+)\]")


def get_json_path(obj: Any, path: str) -> Any:
    """Resolve 'data.items[0].id' (optionally prefixed with '$.') against nested data.

    Raises KeyError/IndexError when a segment is missing.
    """
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    current = obj
    for match in _PATH_TOKEN_RE.finditer(path):
        index, key = match.group(1), match.group(0)
        if index is not None:
            current = current[int(index)]
        elif isinstance(current, list) and key.isdigit():
            current = current[int(key)]
        elif isinstance(current, dict):
            current = current[key]
        else:
            raise KeyError(key)
    return current


def match_value(actual: Any, expected: Any, match_type: str = "equals") -> bool:
    """Compare a resolved value with an expected one using a string match type."""
    if match_type not in MATCH_TYPES:
        match_type = "equals"
    if match_type == "equals":
        if isinstance(actual, (int, float)) and not isinstance(actual, bool):
            number = _as_number(expected)
            if number is not None:
                return actual == number
        return actual == expected or str(actual) == str(expected)
    text, wanted = str(actual), str(expected)
    if match_type == "contains":
        return wanted in text
    if match_type == "startsWith":
        return text.startswith(wanted)
    if match_type == "endsWith":
        return text.endswith(wanted)
    return re.search(wanted, text) is not None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _stored_response(context: ExecutionContext, key: Optional[str]) -> Any:
    return context.get_data(key or "apiResponse")


# ─── Evaluator ────────────────────────────────────────────────

class ConditionEvaluator:
    """Evaluates declarative conditions against an execution context."""

    @staticmethod
    async def evaluate(condition: Optional[dict], context: ExecutionContext) -> ConditionResult:
        if not condition:
            return ConditionResult(False, "No condition configured")

        condition_type = condition.get("type")
        try:
            if condition_type == "variable":
                return ConditionEvaluator._evaluate_variable(condition, context)
            if condition_type in ("expression", "javascript"):
                return ConditionEvaluator._evaluate_expression(condition, context)
            if condition_type == "api-status":
                return ConditionEvaluator._evaluate_api_status(condition, context)
            if condition_type == "api-json-path":
                return ConditionEvaluator._evaluate_api_json_path(condition, context)
            if condition_type == "ui-element":
                return await ConditionEvaluator._evaluate_ui_element(condition, context)
            return ConditionResult(False, f"Unknown condition type: {condition_type}")
        except Exception as e:
            logger.debug("Condition evaluation failed", type=condition_type, error=str(e))
            return ConditionResult(
                False, f"Condition evaluation failed: {e}", {"error": str(e)}
            )

    @staticmethod
    def _evaluate_variable(condition: dict, context: ExecutionContext) -> ConditionResult:
        name = condition.get("variableName")
        if not name:
            return ConditionResult(False, "Variable name is required for variable condition")
        if not context.has_variable(name):
            return ConditionResult(False, f'Variable "{name}" not found in context')

        expected = condition.get("comparisonValue")
        if expected is None:
            return ConditionResult(False, "Comparison value is required for variable condition")

        actual = context.get_variable(name)
        operator = condition.get("comparisonOperator") or "equals"
        if operator not in COMPARISON_OPERATORS:
            return ConditionResult(False, f"Unknown comparison operator: {operator}")
        left, right = _as_number(actual), _as_number(expected)

        if left is not None and right is not None and operator != "equals":
            passed = {
                "greaterThan": left > right,
                "lessThan": left < right,
                "greaterThanOrEqual": left >= right,
                "lessThanOrEqual": left <= right,
            }[operator]
        elif operator == "equals":
            if left is not None and right is not None:
                passed = left == right
            else:
                passed = str(actual) == str(expected)
        else:
            passed = False

        verdict = "passed" if passed else "failed"
        return ConditionResult(
            passed,
            f'Variable condition {verdict}: "{name}" ({actual}) {operator} {expected}',
            {"variableName": name, "variableValue": actual,
             "operator": operator, "comparisonValue": expected},
        )

    @staticmethod
    def _evaluate_expression(condition: dict, context: ExecutionContext) -> ConditionResult:
        expression = (
            condition.get("expression")
            or condition.get("javascriptExpression")
            or condition.get("value")
        )
        if not expression:
            return ConditionResult(False, "Expression is required for expression condition")

        expr = expression.strip()
        if expr.startswith("{{") and expr.endswith("}}"):
            expr = expr[2:-2].strip()
        value = ExpressionEvaluator.evaluate_expression(expr, context)
        passed = bool(value)
        return ConditionResult(
            passed,
            "Expression evaluated to true" if passed else f"Expression evaluated to {value!r}",
            {"expression": expression, "result": value},
        )

    @staticmethod
    def _evaluate_api_status(condition: dict, context: ExecutionContext) -> ConditionResult:
        expected = condition.get("statusCode", condition.get("expectedStatus"))
        if expected is None:
            return ConditionResult(False, "Status code is required for API status condition")

        key = condition.get("apiContextKey") or condition.get("contextKey")
        response = _stored_response(context, key)
        if not isinstance(response, dict):
            return ConditionResult(False, f"No API response stored under '{key or 'apiResponse'}'")

        status = response.get("status")
        passed = _as_number(status) == _as_number(expected)
        return ConditionResult(
            passed,
            f"Expected status {expected}, got {status}",
            {"expected": expected, "actual": status},
        )

    @staticmethod
    def _evaluate_api_json_path(condition: dict, context: ExecutionContext) -> ConditionResult:
        path = condition.get("jsonPath")
        if not path:
            return ConditionResult(False, "JSON path is required for API JSON path condition")
        expected = condition.get("expectedValue")
        if expected is None:
            return ConditionResult(False, "Expected value is required for API JSON path condition")

        key = condition.get("apiContextKey") or condition.get("contextKey")
        response = _stored_response(context, key)
        if not isinstance(response, dict):
            return ConditionResult(False, f"No API response stored under '{key or 'apiResponse'}'")

        try:
            actual = get_json_path(response.get("body"), path)
        except (KeyError, IndexError, TypeError, ValueError):
            return ConditionResult(False, f"JSON path '{path}' not found in response body")

        match_type = condition.get("matchType") or "equals"
        passed = match_value(actual, expected, match_type)
        return ConditionResult(
            passed,
            f"Value at '{path}' is {actual!r} ({match_type} {expected!r})",
            {"jsonPath": path, "actual": actual, "expected": expected, "matchType": match_type},
        )

    @staticmethod
    async def _evaluate_ui_element(condition: dict, context: ExecutionContext) -> ConditionResult:
        selector = condition.get("selector")
        if not selector:
            return ConditionResult(False, "Selector is required for UI element condition")

        page = context.get_page()
        if page is None:
            return ConditionResult(
                False, "No page available. Ensure Open Browser node is executed first."
            )

        selector_type = condition.get("selectorType") or "css"
        check = condition.get("elementCheck") or "visible"
        timeout = condition.get("timeout") or 0

        if check == "exists":
            passed = await page.exists(selector, selector_type=selector_type)
        else:
            visible = await page.is_visible(selector, selector_type=selector_type, timeout=timeout)
            passed = visible if check == "visible" else not visible

        return ConditionResult(
            passed,
            f"Element '{selector}' {check} check {'passed' if passed else 'failed'}",
            {"selector": selector, "elementCheck": check},
        )

    # ─── Retry-until conditions ───

    @staticmethod
    async def check_until(until: dict, context: ExecutionContext) -> ConditionResult:
        """Evaluate an untilCondition from a retry policy.

        Types: selector, url, expression/javascript, api-status, api-json-path.
        """
        until_type = until.get("type")
        value = until.get("value")
        if until_type == "selector":
            return await ConditionEvaluator.evaluate({
                "type": "ui-element",
                "selector": value,
                "selectorType": until.get("selectorType") or "css",
                "elementCheck": until.get("visibility") or "visible",
                "timeout": 0,
            }, context)
        if until_type == "url":
            page = context.get_page()
            if page is None:
                return ConditionResult(False, "No page available for URL condition")
            current = page.url
            passed = bool(value) and (
                re.search(value, current) is not None if until.get("matchType") == "regex"
                else str(value) in current
            )
            return ConditionResult(passed, f"Current URL is {current}", {"url": current})
        if until_type in ("expression", "javascript", "api-javascript"):
            return await ConditionEvaluator.evaluate(
                {"type": "expression", "expression": value}, context
            )
        if until_type == "api-status":
            return await ConditionEvaluator.evaluate({
                "type": "api-status",
                "statusCode": until.get("expectedStatus", value),
                "apiContextKey": until.get("contextKey"),
            }, context)
        if until_type == "api-json-path":
            return await ConditionEvaluator.evaluate({
                "type": "api-json-path",
                "jsonPath": until.get("jsonPath") or value,
                "expectedValue": until.get("expectedValue"),
                "matchType": until.get("matchType"),
                "apiContextKey": until.get("contextKey"),
            }, context)
        return ConditionResult(False, f"Unknown until-condition type: {until_type}")
