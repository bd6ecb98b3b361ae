"""Browser automation nodes using Playwright.

Provides the page-level capability the engine consumes:
- open / close a browser session (one per execution)
- navigation (navigate, back, forward, reload)
- element actions (click, double click, hover, right click)
- typing into inputs

The session is a BrowserDriver stored as the `page` resource of the
execution context, so every browser node of one run shares the same page
(cookies, login state and DOM are preserved between steps) and the Executor
closes it when the run ends.

Requires: playwright (pip install playwright && playwright install chromium)
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

import structlog

from app.config import get_settings
from core.exceptions import ExecutionError
from tasks.base_task import BaseNodeHandler
from workflow.context import BROWSER_RESOURCE, PAGE_RESOURCE, ExecutionContext
from workflow.expressions import ExpressionEvaluator, to_number
from workflow.graph import Node
from workflow.retry_strategies import RetryPolicy, execute_with_retry

logger = structlog.get_logger(__name__)

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
]


def build_selector(selector: str, selector_type: str = "css") -> str:
    """Translate (selector, selectorType) into a Playwright selector string."""
    if selector_type == "xpath":
        return f"xpath={selector}"
    if selector_type == "text":
        return f"text={selector}"
    if selector_type == "testId":
        return f"[data-testid=\"{selector}\"]"
    return selector


def normalize_url(url: str) -> str:
    url = url.strip()
    if not url.lower().startswith(("http://", "https://", "file://", "about:", "data:")):
        url = f"https://{url}"
    return url


@runtime_checkable
class BrowserDriver(Protocol):
    """Page-level operations the browser nodes and conditions rely on."""

    @property
    def url(self) -> str: ...

    async def goto(self, url: str, wait_until: str = "load", timeout: float = 30000) -> None: ...

    async def go_back(self, wait_until: str = "load", timeout: float = 30000) -> None: ...

    async def go_forward(self, wait_until: str = "load", timeout: float = 30000) -> None: ...

    async def reload(self, wait_until: str = "load", timeout: float = 30000) -> None: ...

    async def click(self, selector: str, selector_type: str = "css", button: str = "left",
                    click_count: int = 1, timeout: float = 30000) -> None: ...

    async def hover(self, selector: str, selector_type: str = "css", timeout: float = 30000) -> None: ...

    async def fill(self, selector: str, text: str, selector_type: str = "css",
                   timeout: float = 30000, clear: bool = True, delay: float = 0) -> None: ...

    async def wait_for(self, selector: str, selector_type: str = "css", state: str = "visible",
                       timeout: float = 30000) -> None: ...

    async def wait_for_url(self, pattern: str, timeout: float = 30000) -> None: ...

    async def is_visible(self, selector: str, selector_type: str = "css", timeout: float = 0) -> bool: ...

    async def exists(self, selector: str, selector_type: str = "css") -> bool: ...

    async def text_content(self, selector: str = "body", selector_type: str = "css",
                           timeout: float = 30000) -> Optional[str]: ...

    async def evaluate(self, script: str) -> Any: ...

    async def debug_info(self, selector: Optional[str] = None, selector_type: str = "css") -> dict: ...

    async def close(self) -> None: ...


class PlaywrightDriver:
    """BrowserDriver backed by a Playwright browser, context and page."""

    def __init__(self, playwright: Any, browser: Any, browser_context: Any, page: Any):
        self._pw = playwright
        self._browser = browser
        self._context = browser_context
        self._page = page

    @classmethod
    async def launch(
        cls,
        headless: Optional[bool] = None,
        browser_type: str = "chromium",
        viewport: Optional[dict] = None,
        user_agent: Optional[str] = None,
        launch_options: Optional[dict] = None,
    ) -> "PlaywrightDriver":
        from playwright.async_api import async_playwright

        if headless is None:
            headless = get_settings().BROWSER_HEADLESS

        pw = await async_playwright().start()
        try:
            launcher = getattr(pw, browser_type, None)
            if launcher is None:
                raise ValueError(f"Unsupported browser: {browser_type}")
            browser = await launcher.launch(
                headless=headless, args=_LAUNCH_ARGS, **(launch_options or {})
            )
            ctx_kwargs: Dict[str, Any] = {"viewport": viewport or {"width": 1366, "height": 768}}
            if user_agent:
                ctx_kwargs["user_agent"] = user_agent
            browser_context = await browser.new_context(**ctx_kwargs)
            page = await browser_context.new_page()
        except Exception:
            await pw.stop()
            raise

        logger.info("Browser session created", browser=browser_type, headless=headless)
        return cls(pw, browser, browser_context, page)

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url, wait_until="load", timeout=30000):
        await self._page.goto(url, wait_until=wait_until, timeout=timeout)

    async def go_back(self, wait_until="load", timeout=30000):
        await self._page.go_back(wait_until=wait_until, timeout=timeout)

    async def go_forward(self, wait_until="load", timeout=30000):
        await self._page.go_forward(wait_until=wait_until, timeout=timeout)

    async def reload(self, wait_until="load", timeout=30000):
        await self._page.reload(wait_until=wait_until, timeout=timeout)

    def _locator(self, selector: str, selector_type: str):
        return self._page.locator(build_selector(selector, selector_type)).first

    async def click(self, selector, selector_type="css", button="left", click_count=1, timeout=30000):
        await self._locator(selector, selector_type).click(
            button=button, click_count=click_count, timeout=timeout
        )

    async def hover(self, selector, selector_type="css", timeout=30000):
        await self._locator(selector, selector_type).hover(timeout=timeout)

    async def fill(self, selector, text, selector_type="css", timeout=30000, clear=True, delay=0):
        locator = self._locator(selector, selector_type)
        if delay:
            if clear:
                await locator.fill("", timeout=timeout)
            await locator.press_sequentially(text, delay=delay, timeout=timeout)
        elif clear:
            await locator.fill(text, timeout=timeout)
        else:
            await locator.press_sequentially(text, timeout=timeout)

    async def wait_for(self, selector, selector_type="css", state="visible", timeout=30000):
        await self._locator(selector, selector_type).wait_for(state=state, timeout=timeout)

    async def wait_for_url(self, pattern, timeout=30000):
        await self._page.wait_for_url(f"**{pattern}**" if "*" not in pattern else pattern, timeout=timeout)

    async def is_visible(self, selector, selector_type="css", timeout=0):
        locator = self._locator(selector, selector_type)
        if not timeout:
            return await locator.is_visible()
        try:
            await locator.wait_for(state="visible", timeout=timeout)
            return True
        except Exception:
            return False

    async def exists(self, selector, selector_type="css"):
        return await self._page.locator(build_selector(selector, selector_type)).count() > 0

    async def text_content(self, selector="body", selector_type="css", timeout=30000):
        return await self._locator(selector, selector_type).text_content(timeout=timeout)

    async def evaluate(self, script):
        return await self._page.evaluate(script)

    async def debug_info(self, selector=None, selector_type="css"):
        info: Dict[str, Any] = {"pageUrl": self._page.url}
        try:
            info["pageTitle"] = await self._page.title()
        except Exception as e:
            info["pageTitle"] = None
            info["pageError"] = str(e)
        if selector:
            locator = self._page.locator(build_selector(selector, selector_type))
            info["selector"] = selector
            info["selectorType"] = selector_type
            info["matchCount"] = await locator.count()
        return info

    async def close(self):
        try:
            await self._browser.close()
        finally:
            await self._pw.stop()


DriverFactory = Callable[..., Awaitable[BrowserDriver]]


def _require_page(node: Node, context: ExecutionContext) -> BrowserDriver:
    page = context.get_page()
    if page is None:
        raise ExecutionError(
            "No page available. Ensure Open Browser node is executed first.", node_id=node.id
        )
    return page


def _timeout(node: Node) -> float:
    return to_number(node.data.get("timeout"), 0) or get_settings().NODE_DEFAULT_TIMEOUT_MS


class OpenBrowserHandler(BaseNodeHandler):
    """Launch a browser session for this execution.

    Config:
        headless: default BROWSER_HEADLESS
        browser: chromium | firefox | webkit (default: chromium)
        viewportWidth / viewportHeight
        userAgent
        launchOptions: extra Playwright launch kwargs
    """

    node_type = "openBrowser"
    display_name = "Open Browser"
    description = "Launch a browser session"

    def __init__(self, driver_factory: Optional[DriverFactory] = None):
        self._factory = driver_factory or PlaywrightDriver.launch

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        existing = context.release_resource(PAGE_RESOURCE)
        context.release_resource(BROWSER_RESOURCE)
        if existing is not None:
            await existing.close()

        viewport = None
        if data.get("viewportWidth") and data.get("viewportHeight"):
            viewport = {"width": int(data["viewportWidth"]), "height": int(data["viewportHeight"])}

        driver = await self._factory(
            headless=data.get("headless"),
            browser_type=data.get("browser") or "chromium",
            viewport=viewport,
            user_agent=data.get("userAgent"),
            launch_options=data.get("launchOptions"),
        )
        context.set_resource(PAGE_RESOURCE, driver)
        context.set_resource(BROWSER_RESOURCE, driver)


class NavigationHandler(BaseNodeHandler):
    """Page navigation.

    Config:
        action: navigate | goBack | goForward | reload (required)
        url: target for navigate (templates allowed; https:// added if missing)
        waitUntil: load | domcontentloaded | networkidle (default: load)
        timeout: ms
        retry: Retry policy
    """

    node_type = "navigation"
    display_name = "Navigation"
    description = "Navigate the current page"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        page = _require_page(node, context)
        data = node.data
        action = data.get("action") or ("navigate" if data.get("url") else None)
        if not action:
            raise ExecutionError("Action is required for Navigation node", node_id=node.id)

        wait_until = data.get("waitUntil") or "load"
        timeout = _timeout(node)

        async def perform() -> None:
            if action == "navigate":
                url = data.get("url")
                if not url:
                    raise ExecutionError("URL is required for navigate action", node_id=node.id)
                url = normalize_url(str(ExpressionEvaluator.evaluate(url, context)))
                await page.goto(url, wait_until=wait_until, timeout=timeout)
            elif action == "goBack":
                await page.go_back(wait_until=wait_until, timeout=timeout)
            elif action == "goForward":
                await page.go_forward(wait_until=wait_until, timeout=timeout)
            elif action == "reload":
                await page.reload(wait_until=wait_until, timeout=timeout)
            else:
                raise ExecutionError(f"Unknown navigation action: {action}", node_id=node.id)

        await execute_with_retry(perform, RetryPolicy.from_node_data(data, context), context)


class ActionHandler(BaseNodeHandler):
    """Element action.

    Config:
        action: click | doubleClick | hover | rightClick (default: click)
        selector, selectorType
        timeout: ms
        retry: Retry policy
    """

    node_type = "action"
    display_name = "Action"
    description = "Click or hover an element"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        page = _require_page(node, context)
        data = node.data
        selector = ExpressionEvaluator.evaluate(data.get("selector"), context)
        if not selector:
            raise ExecutionError("Selector is required for Action node", node_id=node.id)
        selector_type = data.get("selectorType") or "css"
        action = data.get("action") or "click"
        timeout = _timeout(node)

        async def perform() -> None:
            if action == "click":
                await page.click(selector, selector_type=selector_type, timeout=timeout)
            elif action == "doubleClick":
                await page.click(selector, selector_type=selector_type, click_count=2, timeout=timeout)
            elif action == "rightClick":
                await page.click(selector, selector_type=selector_type, button="right", timeout=timeout)
            elif action == "hover":
                await page.hover(selector, selector_type=selector_type, timeout=timeout)
            else:
                raise ExecutionError(f"Unknown action: {action}", node_id=node.id)

        await execute_with_retry(perform, RetryPolicy.from_node_data(data, context), context)


class TypeHandler(BaseNodeHandler):
    """Type text into an input.

    Config:
        selector, selectorType
        text: templates allowed
        clearFirst: replace the current value (default: true)
        delay: per-keystroke delay in ms
        retry: Retry policy
    """

    node_type = "type"
    display_name = "Type"
    description = "Type text into an input"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        page = _require_page(node, context)
        data = node.data
        selector = ExpressionEvaluator.evaluate(data.get("selector"), context)
        if not selector:
            raise ExecutionError("Selector is required for Type node", node_id=node.id)
        raw_text = data.get("text", data.get("value"))
        if raw_text is None:
            raise ExecutionError("Text is required for Type node", node_id=node.id)
        text_value = ExpressionEvaluator.evaluate(raw_text, context)

        async def perform() -> None:
            await page.fill(
                selector,
                "" if text_value is None else str(text_value),
                selector_type=data.get("selectorType") or "css",
                timeout=_timeout(node),
                clear=data.get("clearFirst", True) is not False,
                delay=to_number(data.get("delay"), 0),
            )

        await execute_with_retry(perform, RetryPolicy.from_node_data(data, context), context)


class CloseBrowserHandler(BaseNodeHandler):
    """Close the browser session, if any."""

    node_type = "closeBrowser"
    display_name = "Close Browser"
    description = "Close the browser session"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        page = context.release_resource(PAGE_RESOURCE)
        context.release_resource(BROWSER_RESOURCE)
        if page is None:
            logger.debug("No browser session to close", node_id=node.id)
            return
        await page.close()


BROWSER_NODE_TYPES = {
    "openBrowser": OpenBrowserHandler,
    "navigation": NavigationHandler,
    "action": ActionHandler,
    "type": TypeHandler,
    "closeBrowser": CloseBrowserHandler,
}
