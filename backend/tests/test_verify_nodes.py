"""Tests for the Verify node strategies."""

import pytest

from core.exceptions import ExecutionError, RetryExhausted
from tasks.implementations.verify_nodes import VERIFICATION_RESULT_KEY, VerifyHandler, get_strategy
from workflow.context import ExecutionContext
from workflow.graph import Node


class _FakePage:
    def __init__(self, url="https://shop.test/cart", text="Total: 42 EUR", visible=True):
        self.url = url
        self.text = text
        self.visible = visible
        self.visibility_checks = 0

    async def text_content(self, selector, selector_type="css", timeout=30000):
        return self.text

    async def is_visible(self, selector, selector_type="css", timeout=0):
        self.visibility_checks += 1
        return self.visible

    async def exists(self, selector, selector_type="css"):
        return self.visible


def _api_context(status=200, body=None, headers=None):
    return ExecutionContext(data={"apiResponse": {
        "status": status,
        "headers": headers or {"Content-Type": "application/json"},
        "body": body if body is not None else {"user": {"name": "Ada", "roles": ["admin"]}},
    }})


def _verify(**data):
    return Node("v", "verify", data)


@pytest.mark.unit
class TestApiVerification:
    async def test_status_passes(self):
        ctx = _api_context(status=200)
        await VerifyHandler().run(_verify(domain="api", verificationType="status", statusCode="200"), ctx)
        stored = ctx.get_data(VERIFICATION_RESULT_KEY)
        assert stored["passed"] is True
        assert stored["domain"] == "api"

    async def test_status_fails(self):
        ctx = _api_context(status=500)
        with pytest.raises(ExecutionError, match="Expected status code 200, but got 500"):
            await VerifyHandler().run(_verify(domain="api", verificationType="status", statusCode=200), ctx)
        assert ctx.get_data(VERIFICATION_RESULT_KEY)["passed"] is False

    async def test_header_case_insensitive(self):
        ctx = _api_context()
        await VerifyHandler().run(_verify(
            domain="api", verificationType="header", headerName="content-type",
            expectedValue="json", matchType="contains",
        ), ctx)

    async def test_body_path(self):
        ctx = _api_context()
        await VerifyHandler().run(_verify(
            domain="api", verificationType="bodyPath", jsonPath="user.roles[0]", expectedValue="admin",
        ), ctx)

    async def test_body_path_missing(self):
        ctx = _api_context()
        with pytest.raises(ExecutionError, match="not found"):
            await VerifyHandler().run(_verify(
                domain="api", verificationType="bodyPath", jsonPath="user.email", expectedValue="x",
            ), ctx)

    async def test_missing_response(self):
        with pytest.raises(ExecutionError, match="API response not found"):
            await VerifyHandler().run(
                _verify(domain="api", verificationType="status", statusCode=200), ExecutionContext()
            )

    async def test_unknown_strategy(self):
        assert get_strategy("api", "latency") is None
        with pytest.raises(ExecutionError, match="No verification strategy"):
            await VerifyHandler().run(_verify(domain="api", verificationType="latency"), _api_context())

    async def test_domain_required(self):
        with pytest.raises(ExecutionError, match="Domain is required"):
            await VerifyHandler().run(_verify(verificationType="status"), _api_context())


@pytest.mark.unit
class TestBrowserVerification:
    async def test_url_contains(self):
        ctx = ExecutionContext()
        ctx.set_resource("page", _FakePage())
        await VerifyHandler().run(_verify(domain="browser", verificationType="url", urlPattern="/cart"), ctx)

    async def test_text_regex(self):
        ctx = ExecutionContext()
        ctx.set_resource("page", _FakePage())
        await VerifyHandler().run(_verify(
            domain="browser", verificationType="text", expectedText=r"Total: \d+", matchType="regex",
        ), ctx)

    async def test_element_hidden(self):
        ctx = ExecutionContext()
        ctx.set_resource("page", _FakePage(visible=False))
        await VerifyHandler().run(_verify(
            domain="browser", verificationType="element", selector=".spinner", elementCheck="hidden",
        ), ctx)

    async def test_no_page(self):
        with pytest.raises(ExecutionError, match="No page available"):
            await VerifyHandler().run(
                _verify(domain="browser", verificationType="url", urlPattern="x"), ExecutionContext()
            )

    async def test_browser_retry_exhausted(self):
        page = _FakePage(visible=False)
        ctx = ExecutionContext()
        ctx.set_resource("page", page)
        with pytest.raises(RetryExhausted):
            await VerifyHandler().run(_verify(
                domain="browser", verificationType="element", selector="#ok",
                retry={"enabled": True, "count": 2, "delay": 1},
            ), ctx)
        assert page.visibility_checks == 3
        assert ctx.get_data(VERIFICATION_RESULT_KEY)["passed"] is False
