"""Tests for browser nodes against an in-memory driver."""

import pytest

from core.exceptions import ExecutionError, RetryExhausted
from tasks.implementations.browser_nodes import (
    ActionHandler,
    BrowserDriver,
    CloseBrowserHandler,
    NavigationHandler,
    OpenBrowserHandler,
    TypeHandler,
    build_selector,
    normalize_url,
)
from workflow.context import ExecutionContext
from workflow.graph import Node


class FakeDriver:
    """Records calls instead of driving a browser."""

    def __init__(self, failing_clicks=0):
        self.calls = []
        self.url = "about:blank"
        self.closed = False
        self.failing_clicks = failing_clicks

    async def goto(self, url, wait_until="load", timeout=30000):
        self.url = url
        self.calls.append(("goto", url, wait_until))

    async def go_back(self, wait_until="load", timeout=30000):
        self.calls.append(("back",))

    async def go_forward(self, wait_until="load", timeout=30000):
        self.calls.append(("forward",))

    async def reload(self, wait_until="load", timeout=30000):
        self.calls.append(("reload",))

    async def click(self, selector, selector_type="css", button="left", click_count=1, timeout=30000):
        if self.failing_clicks:
            self.failing_clicks -= 1
            raise TimeoutError(f"{selector} not clickable")
        self.calls.append(("click", selector, button, click_count))

    async def hover(self, selector, selector_type="css", timeout=30000):
        self.calls.append(("hover", selector))

    async def fill(self, selector, text, selector_type="css", timeout=30000, clear=True, delay=0):
        self.calls.append(("fill", selector, text, clear))

    async def wait_for(self, selector, selector_type="css", state="visible", timeout=30000):
        self.calls.append(("wait_for", selector))

    async def wait_for_url(self, pattern, timeout=30000):
        self.calls.append(("wait_for_url", pattern))

    async def is_visible(self, selector, selector_type="css", timeout=0):
        return True

    async def exists(self, selector, selector_type="css"):
        return True

    async def text_content(self, selector="body", selector_type="css", timeout=30000):
        return ""

    async def evaluate(self, script):
        return None

    async def debug_info(self, selector=None, selector_type="css"):
        return {"pageUrl": self.url}

    async def close(self):
        self.closed = True


def _page_context(driver=None):
    ctx = ExecutionContext()
    ctx.set_resource("page", driver or FakeDriver())
    return ctx


@pytest.mark.unit
class TestHelpers:
    def test_build_selector(self):
        assert build_selector("//a", "xpath") == "xpath=//a"
        assert build_selector("Sign in", "text") == "text=Sign in"
        assert build_selector("login", "testId") == '[data-testid="login"]'
        assert build_selector("#id") == "#id"

    def test_normalize_url(self):
        assert normalize_url(" example.com ") == "https://example.com"
        assert normalize_url("http://x.test") == "http://x.test"

    def test_fake_satisfies_protocol(self):
        assert isinstance(FakeDriver(), BrowserDriver)


@pytest.mark.unit
class TestBrowserNodes:
    async def test_open_and_close(self):
        created = []

        async def factory(**kwargs):
            created.append(kwargs)
            return FakeDriver()

        ctx = ExecutionContext()
        await OpenBrowserHandler(driver_factory=factory).run(
            Node("o", "openBrowser", {"headless": True, "viewportWidth": 800, "viewportHeight": 600}), ctx
        )
        driver = ctx.get_page()
        assert created[0]["viewport"] == {"width": 800, "height": 600}
        assert ctx.get_browser() is driver

        await CloseBrowserHandler().run(Node("c", "closeBrowser"), ctx)
        assert driver.closed
        assert ctx.get_page() is None

    async def test_open_replaces_existing_session(self):
        old = FakeDriver()
        ctx = _page_context(old)

        async def factory(**kwargs):
            return FakeDriver()

        await OpenBrowserHandler(driver_factory=factory).run(Node("o", "openBrowser"), ctx)
        assert old.closed
        assert ctx.get_page() is not old

    async def test_navigate_with_template(self):
        driver = FakeDriver()
        ctx = _page_context(driver)
        ctx.set_variable("sku", "A-1")
        await NavigationHandler().run(
            Node("n", "navigation", {"action": "navigate", "url": "shop.test/item/{{ variables.sku }}"}), ctx
        )
        assert driver.calls == [("goto", "https://shop.test/item/A-1", "load")]

    async def test_navigation_requires_page(self):
        with pytest.raises(ExecutionError, match="No page available"):
            await NavigationHandler().run(Node("n", "navigation", {"action": "reload"}), ExecutionContext())

    @pytest.mark.parametrize("action,expected", [
        ("click", ("click", "#buy", "left", 1)),
        ("doubleClick", ("click", "#buy", "left", 2)),
        ("rightClick", ("click", "#buy", "right", 1)),
        ("hover", ("hover", "#buy")),
    ])
    async def test_actions(self, action, expected):
        driver = FakeDriver()
        await ActionHandler().run(
            Node("a", "action", {"action": action, "selector": "#buy"}), _page_context(driver)
        )
        assert driver.calls == [expected]

    async def test_action_retried(self):
        driver = FakeDriver(failing_clicks=2)
        await ActionHandler().run(Node("a", "action", {
            "selector": "#buy", "retry": {"enabled": True, "count": 2, "delay": 1},
        }), _page_context(driver))
        assert driver.calls == [("click", "#buy", "left", 1)]

    async def test_action_retry_exhausted(self):
        driver = FakeDriver(failing_clicks=5)
        with pytest.raises(RetryExhausted):
            await ActionHandler().run(Node("a", "action", {
                "selector": "#buy", "retry": {"enabled": True, "count": 1, "delay": 1},
            }), _page_context(driver))

    async def test_type_text(self):
        driver = FakeDriver()
        ctx = _page_context(driver)
        ctx.set_variable("user", "ada")
        await TypeHandler().run(Node("t", "type", {
            "selector": "#login", "text": "{{ variables.user }}", "clearFirst": False,
        }), ctx)
        assert driver.calls == [("fill", "#login", "ada", False)]

    async def test_type_requires_text(self):
        with pytest.raises(ExecutionError, match="Text is required"):
            await TypeHandler().run(Node("t", "type", {"selector": "#x"}), _page_context())
