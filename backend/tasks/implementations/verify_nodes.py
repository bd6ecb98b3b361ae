"""Verify node: assertions over API responses and the browser page.

Each (domain, verificationType) pair maps to a strategy returning a
VerificationResult. A failed verification raises ExecutionError, so the
Executor's failSilently handling decides whether the run continues.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from core.exceptions import ExecutionError, RetryExhausted
from tasks.base_task import BaseNodeHandler
from workflow.conditions import get_json_path, match_value
from workflow.context import ExecutionContext
from workflow.expressions import ExpressionEvaluator, to_number
from workflow.graph import Node
from workflow.retry_strategies import RetryPolicy, execute_with_retry

logger = structlog.get_logger(__name__)

VERIFICATION_RESULT_KEY = "verificationResult"


@dataclass
class VerificationResult:
    passed: bool
    message: str
    actual_value: Any = None
    expected_value: Any = None
    details: Dict[str, Any] = field(default_factory=dict)


def _resolve(value: Any, context: ExecutionContext) -> Any:
    return ExpressionEvaluator.evaluate(value, context)


def _api_response(data: dict, context: ExecutionContext) -> dict:
    key = data.get("apiContextKey") or "apiResponse"
    response = context.get_data(key)
    if not isinstance(response, dict):
        available = ", ".join(context.all_data().keys()) or "none"
        raise ValueError(
            f"API response not found in context with key: {key}. Available keys: {available}"
        )
    return response


def _page(context: ExecutionContext) -> Any:
    page = context.get_page()
    if page is None:
        raise ValueError("No page available. Ensure Open Browser node is executed first.")
    return page


# ─── API strategies ───

async def verify_api_status(data: dict, context: ExecutionContext) -> VerificationResult:
    response = _api_response(data, context)
    expected = _resolve(data.get("statusCode"), context)
    if expected is None:
        raise ValueError("Status code is required for API status verification")
    actual = response.get("status")
    passed = actual == to_number(expected, default=None)
    return VerificationResult(
        passed,
        f"Status code {actual} matches expected {expected}" if passed
        else f"Expected status code {expected}, but got {actual}",
        actual, expected,
    )


async def verify_api_header(data: dict, context: ExecutionContext) -> VerificationResult:
    response = _api_response(data, context)
    name = data.get("headerName")
    if not name:
        raise ValueError("Header name is required for API header verification")
    headers = {str(k).lower(): v for k, v in (response.get("headers") or {}).items()}
    actual = headers.get(name.lower())
    expected = _resolve(data.get("expectedValue"), context)
    if expected is None:
        passed = actual is not None
    else:
        passed = actual is not None and match_value(actual, expected, data.get("matchType") or "equals")
    return VerificationResult(
        passed,
        f"Header '{name}' is {actual!r}" + ("" if passed else f", expected {expected!r}"),
        actual, expected,
    )


async def verify_api_body_path(data: dict, context: ExecutionContext) -> VerificationResult:
    response = _api_response(data, context)
    path = data.get("jsonPath")
    if not path:
        raise ValueError("JSON path is required for API body path verification")
    expected = _resolve(data.get("expectedValue"), context)
    if expected is None:
        raise ValueError("Expected value is required")
    try:
        actual = get_json_path(response.get("body"), path)
    except (KeyError, IndexError, TypeError, ValueError):
        return VerificationResult(
            False, f'Path "{path}" not found in response body', None, expected, {"jsonPath": path}
        )
    match_type = data.get("matchType") or "equals"
    passed = match_value(actual, expected, match_type)
    return VerificationResult(
        passed,
        f'Path "{path}" has value {actual!r}'
        + ("" if passed else f" but expected {expected!r} (match type: {match_type})"),
        actual, expected, {"jsonPath": path},
    )


# ─── Browser strategies ───

async def verify_browser_url(data: dict, context: ExecutionContext) -> VerificationResult:
    page = _page(context)
    pattern = _resolve(data.get("urlPattern"), context)
    if not pattern:
        raise ValueError("URL pattern is required for URL verification")
    current = page.url
    match_type = data.get("matchType") or "contains"
    passed = match_value(current, pattern, match_type)
    return VerificationResult(
        passed,
        f'Current URL "{current}" ' + ("matches" if passed else "does not match")
        + f' pattern "{pattern}"',
        current, pattern,
    )


async def verify_browser_text(data: dict, context: ExecutionContext) -> VerificationResult:
    page = _page(context)
    expected = _resolve(data.get("expectedText"), context)
    if not expected:
        raise ValueError("Expected text is required for text verification")
    actual = await page.text_content(
        data.get("selector") or "body",
        selector_type=data.get("selectorType") or "css",
        timeout=to_number(data.get("timeout"), 30000),
    ) or ""
    passed = match_value(actual, expected, data.get("matchType") or "contains")
    return VerificationResult(
        passed,
        f'Found expected text "{expected}"' if passed
        else f'Expected text "{expected}" not found. Actual text: "{actual[:200]}"',
        actual, expected,
    )


async def verify_browser_element(data: dict, context: ExecutionContext) -> VerificationResult:
    page = _page(context)
    selector = data.get("selector")
    if not selector:
        raise ValueError("Selector is required for element verification")
    selector_type = data.get("selectorType") or "css"
    check = data.get("elementCheck") or "visible"
    if check == "exists":
        passed = await page.exists(selector, selector_type=selector_type)
    else:
        visible = await page.is_visible(
            selector, selector_type=selector_type, timeout=to_number(data.get("timeout"), 0)
        )
        passed = visible if check == "visible" else not visible
    return VerificationResult(
        passed,
        f"Element '{selector}' {check} check {'passed' if passed else 'failed'}",
        passed, True, {"selector": selector, "elementCheck": check},
    )


Strategy = Callable[[dict, ExecutionContext], Awaitable[VerificationResult]]

VERIFICATION_STRATEGIES: Dict[tuple, Strategy] = {
    ("api", "status"): verify_api_status,
    ("api", "header"): verify_api_header,
    ("api", "bodyPath"): verify_api_body_path,
    ("browser", "url"): verify_browser_url,
    ("browser", "text"): verify_browser_text,
    ("browser", "element"): verify_browser_element,
}


def get_strategy(domain: str, verification_type: str) -> Optional[Strategy]:
    return VERIFICATION_STRATEGIES.get((domain, verification_type))


class VerifyHandler(BaseNodeHandler):
    """Assert on an API response or the current page.

    Config:
        domain: "api" | "browser" (required)
        verificationType: api: status, header, bodyPath; browser: url, text, element
        matchType: equals | contains | startsWith | endsWith | regex
        retry: Retry policy (browser domain only; API responses do not change)

    The result is stored under data["verificationResult"].
    """

    node_type = "verify"
    display_name = "Verify"
    description = "Assert on API responses or page state"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        domain = data.get("domain")
        verification_type = data.get("verificationType")
        if not domain:
            raise ExecutionError("Domain is required for Verify node", node_id=node.id)
        if not verification_type:
            raise ExecutionError("Verification type is required for Verify node", node_id=node.id)

        strategy = get_strategy(domain, verification_type)
        if strategy is None:
            raise ExecutionError(
                f'No verification strategy found for domain "{domain}" '
                f'and type "{verification_type}"',
                node_id=node.id,
            )

        async def attempt() -> VerificationResult:
            result = await strategy(data, context)
            if not result.passed:
                raise ExecutionError(result.message, node_id=node.id)
            return result

        policy = RetryPolicy.disabled() if domain == "api" else RetryPolicy.from_node_data(data, context)
        try:
            result = await execute_with_retry(attempt, policy, context)
        except (ExecutionError, RetryExhausted) as e:
            self._store(context, domain, verification_type, VerificationResult(False, e.message))
            raise
        except ValueError as e:
            self._store(context, domain, verification_type, VerificationResult(False, str(e)))
            raise ExecutionError(str(e), node_id=node.id, cause=e) from e

        self._store(context, domain, verification_type, result)
        logger.debug("Verification passed", node_id=node.id, message=result.message)

    @staticmethod
    def _store(
        context: ExecutionContext, domain: str, verification_type: str, result: VerificationResult
    ) -> None:
        stored = asdict(result)
        stored.update({"domain": domain, "type": verification_type})
        context.set_data(VERIFICATION_RESULT_KEY, stored)


VERIFY_NODE_TYPES = {
    "verify": VerifyHandler,
}
