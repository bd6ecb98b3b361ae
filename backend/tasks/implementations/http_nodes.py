"""API Request node implementation.

Makes HTTP requests to external APIs/services with httpx and stores the
response in the workflow data for later verification or templating.
"""

import base64
import json
from typing import Any, Dict, Optional

import httpx
import structlog

from app.config import get_settings
from core.exceptions import ExecutionError
from tasks.base_task import BaseNodeHandler
from workflow.context import ExecutionContext
from workflow.expressions import ExpressionEvaluator, to_number
from workflow.graph import Node
from workflow.retry_strategies import RetryPolicy, execute_with_retry

logger = structlog.get_logger(__name__)

_BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def _apply_auth(headers: Dict[str, str], auth_config: Dict[str, Any]) -> None:
    auth_type = auth_config.get("type", "")
    if auth_type == "bearer":
        headers["Authorization"] = f"Bearer {auth_config['token']}"
    elif auth_type == "basic":
        creds = base64.b64encode(
            f"{auth_config['username']}:{auth_config['password']}".encode()
        ).decode()
        headers["Authorization"] = f"Basic {creds}"
    elif auth_type == "apiKey":
        header_name = auth_config.get("header", "X-API-Key")
        headers[header_name] = auth_config["key"]


class ApiRequestHandler(BaseNodeHandler):
    """Execute an HTTP request and store the response.

    Config:
        url: Target URL (required, templates allowed)
        method: GET, POST, PUT, PATCH, DELETE (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body (string or object)
        bodyType: "json" | "form" | "text" (default: json)
        auth: {"type": "bearer|basic|apiKey", ...}
        timeout: Request timeout in ms (default: NODE_DEFAULT_TIMEOUT_MS)
        contextKey: Where the response is stored (default: apiResponse)
        retry: Retry policy (see workflow.retry_strategies)

    Stored response: {status, statusText, headers, body, url, method, duration}.
    A non-2xx status is stored, not raised; use a verify node to assert on it.
    """

    node_type = "apiRequest"
    display_name = "API Request"
    description = "Make HTTP requests to APIs and web services"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        if not data.get("url"):
            raise ExecutionError("URL is required for API Request node", node_id=node.id)

        config = ExpressionEvaluator.resolve_config(
            {k: data.get(k) for k in ("url", "headers", "params", "body", "auth")}, context
        )
        method = str(data.get("method") or "GET").upper()
        body_type = data.get("bodyType") or "json"
        context_key = data.get("contextKey") or "apiResponse"
        timeout_ms = to_number(data.get("timeout"), 0) or get_settings().NODE_DEFAULT_TIMEOUT_MS

        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        if config.get("auth"):
            _apply_auth(headers, config["auth"])

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": str(config["url"]).strip(),
            "headers": headers,
            "params": config.get("params") or None,
            "timeout": timeout_ms / 1000,
        }

        body = config.get("body")
        if body not in (None, "") and method in _BODY_METHODS:
            if body_type == "json":
                kwargs["json"] = body if isinstance(body, (dict, list)) else json.loads(body)
            elif body_type == "form":
                kwargs["data"] = body
            else:
                kwargs["content"] = str(body)

        async def send() -> dict:
            async with httpx.AsyncClient(
                transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.request(**kwargs)

            try:
                payload = response.json()
            except ValueError:
                payload = response.text

            stored = {
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "headers": dict(response.headers),
                "body": payload,
                "url": str(response.url),
                "method": method,
                "duration": response.elapsed.total_seconds() * 1000 if response.elapsed else 0,
            }
            context.set_data(context_key, stored)
            return stored

        policy = RetryPolicy.from_node_data(data, context)
        try:
            result = await execute_with_retry(send, policy, context)
        except httpx.TimeoutException as e:
            raise ExecutionError(
                f"Request timed out after {int(timeout_ms)}ms", node_id=node.id, cause=e
            ) from e
        except httpx.HTTPError as e:
            raise ExecutionError(f"HTTP request failed: {e}", node_id=node.id, cause=e) from e

        logger.debug(
            "API request completed",
            node_id=node.id,
            status=result.get("status") if result else None,
            url=kwargs["url"],
        )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
                "headers": {"type": "object"},
                "params": {"type": "object"},
                "body": {"description": "Request body"},
                "bodyType": {"type": "string", "enum": ["json", "form", "text"]},
                "auth": {"type": "object"},
                "timeout": {"type": "integer", "default": 30000},
                "contextKey": {"type": "string", "default": "apiResponse"},
                "retry": {"type": "object"},
            },
        }


# Export for handler registry
HTTP_NODE_TYPES = {
    "apiRequest": ApiRequestHandler,
}
