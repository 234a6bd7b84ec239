"""Playwright session bound to one sandbox container."""
from __future__ import annotations

import logging
import time
from typing import Any, Literal, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
    TimeoutError as PlaywrightTimeout,
)

from exceptions import (
    AuthRequiredError,
    ElementNotFoundError,
    PageNotLoadedError,
    RuntimeClientError,
    StepExecutionError,
)
from test_types import ActionResult, PageElement, PageSnapshot, StepAction

BrowserType = Literal["chromium", "firefox", "webkit"]

_MAX_SIGNALS = 50

_SNAPSHOT_SCRIPT = """(limit) => {
    const query = 'a, button, input, select, textarea, [role=button], [role=link], '
        + '[role=checkbox], [role=tab], [role=menuitem], [onclick], [contenteditable=true]';
    const out = [];
    for (const el of document.querySelectorAll(query)) {
        if (out.length >= limit) break;
        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        const visible = style.display !== 'none'
            && style.visibility !== 'hidden'
            && style.opacity !== '0'
            && rect.width > 0
            && rect.height > 0;
        if (!visible) continue;
        const disabled = el.disabled === true
            || el.getAttribute('aria-disabled') === 'true';
        out.push({
            selector: buildSelector(el),
            tag: (el.tagName || '').toLowerCase(),
            text: (el.innerText || el.value || '').trim().slice(0, 200),
            role: el.getAttribute('role'),
            label: el.getAttribute('aria-label') || el.placeholder || el.name || null,
            visible: true,
            enabled: !disabled,
        });
    }
    return out;

    function buildSelector(elem) {
        if (elem.id) return '#' + CSS.escape(elem.id);
        const testId = elem.getAttribute('data-testid');
        if (testId) return '[data-testid="' + testId + '"]';
        if (elem.name) return elem.tagName.toLowerCase() + '[name="' + elem.name + '"]';
        const path = [];
        while (elem && elem.nodeType === Node.ELEMENT_NODE) {
            let selector = elem.tagName.toLowerCase();
            if (elem.id) {
                path.unshift('#' + CSS.escape(elem.id));
                break;
            }
            let sib = elem, nth = 1;
            while (sib = sib.previousElementSibling) {
                if (sib.tagName === elem.tagName) nth++;
            }
            if (nth > 1) selector += ':nth-of-type(' + nth + ')';
            path.unshift(selector);
            elem = elem.parentElement;
        }
        return path.join(' > ');
    }
}"""


class SandboxBrowser:
    """Remote browser session served by a sandbox's Playwright server.

    The session owns exactly one context and page. ``reset_context`` swaps
    them for fresh ones so cookies, storage and open pages never leak from
    one test run into the next while the container keeps running.
    """

    def __init__(
        self,
        ws_endpoint: str,
        browser_type: BrowserType = "chromium",
        viewport_width: int = 1440,
        viewport_height: int = 900,
        navigation_timeout_ms: int = 30000,
        action_timeout_ms: int = 5000,
        logger: Optional[logging.Logger] = None,
    ):
        self.ws_endpoint = ws_endpoint
        self.browser_type = browser_type
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.navigation_timeout_ms = navigation_timeout_ms
        self.action_timeout_ms = action_timeout_ms
        self.logger = logger or logging.getLogger("browser")

        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._console_errors: list[str] = []
        self._network_errors: list[str] = []

    @property
    def is_connected(self) -> bool:
        return self.browser is not None and self.browser.is_connected()

    def _ensure_started(self) -> Page:
        if self.page is None:
            raise RuntimeClientError("Browser session not started", {"endpoint": self.ws_endpoint})
        return self.page

    async def start(self) -> None:
        """Connect to the sandbox and open the first context."""
        self._playwright = await async_playwright().start()
        launcher = getattr(self._playwright, self.browser_type)
        try:
            self.browser = await launcher.connect(self.ws_endpoint, timeout=self.navigation_timeout_ms)
        except PlaywrightError as e:
            await self._playwright.stop()
            self._playwright = None
            raise RuntimeClientError(
                f"Could not connect to sandbox browser: {e}",
                {"endpoint": self.ws_endpoint},
            ) from e
        await self._open_context()
        self.logger.info(f"Browser session connected: {self.ws_endpoint} ({self.browser_type})")

    async def _open_context(self) -> None:
        try:
            self.context = await self.browser.new_context(
                viewport={"width": self.viewport_width, "height": self.viewport_height}
            )
        except PlaywrightError as e:
            raise RuntimeClientError(
                f"Could not open browser context: {e}",
                {"endpoint": self.ws_endpoint},
            ) from e
        self.context.set_default_timeout(self.action_timeout_ms)
        self.context.set_default_navigation_timeout(self.navigation_timeout_ms)
        self.page = await self.context.new_page()
        self.page.on("console", self._handle_console)
        self.page.on("requestfailed", self._handle_request_failed)
        self.page.on("response", self._handle_response)

    def _push(self, bucket: list[str], message: str) -> None:
        bucket.append(message)
        if len(bucket) > _MAX_SIGNALS:
            del bucket[: len(bucket) - _MAX_SIGNALS]

    def _handle_console(self, msg: Any) -> None:
        if msg.type == "error":
            self._push(self._console_errors, msg.text)

    def _handle_request_failed(self, request: Any) -> None:
        failure = request.failure or "failed"
        self._push(self._network_errors, f"{request.method} {request.url}: {failure}")

    def _handle_response(self, response: Any) -> None:
        if response.status >= 400:
            self._push(self._network_errors, f"{response.status} {response.url}")

    async def reset_context(self) -> None:
        """Close the current context and open a clean one."""
        if self.browser is None:
            raise RuntimeClientError("Browser session not started", {"endpoint": self.ws_endpoint})
        if self.context is not None:
            try:
                await self.context.close()
            except PlaywrightError as e:
                self.logger.warning(f"Closing browser context failed: {e}")
        self.context = None
        self.page = None
        self._console_errors.clear()
        self._network_errors.clear()
        await self._open_context()
        self.logger.debug(f"Browser context reset: {self.ws_endpoint}")

    async def close(self) -> None:
        """Close the browser session and clean up resources."""
        if self.context:
            try:
                await self.context.close()
            except PlaywrightError:
                pass
        if self.browser:
            try:
                await self.browser.close()
            except PlaywrightError:
                pass
        if self._playwright:
            await self._playwright.stop()
        self.context = None
        self.page = None
        self.browser = None
        self._playwright = None
        self.logger.info(f"Browser session closed: {self.ws_endpoint}")

    def current_url(self) -> str:
        return self.page.url if self.page else ""

    # ─────────────────────────────────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────────────────────────────────

    async def perform(self, action: StepAction) -> ActionResult:
        """Execute one action; raises a StepExecutionError subclass on failure."""
        page = self._ensure_started()
        started = time.monotonic()
        handler = getattr(self, f"_do_{action.type}", None)
        if handler is None:
            raise StepExecutionError(f"Unsupported action: {action.type}", action_type=action.type)
        if action.requires_target and not action.target:
            raise ElementNotFoundError(
                f"Action '{action.type}' has no target",
                action_type=action.type,
                url=page.url,
            )

        try:
            message = await handler(page, action)
        except StepExecutionError:
            raise
        except PlaywrightTimeout as e:
            if action.is_navigation:
                raise PageNotLoadedError(
                    f"Navigation timed out: {action.value or action.target}",
                    action_type=action.type,
                    url=page.url,
                ) from e
            raise ElementNotFoundError(
                f"Timed out waiting for '{action.target}'",
                action_type=action.type,
                target=action.target,
                url=page.url,
            ) from e
        except PlaywrightError as e:
            raise StepExecutionError(
                f"{action.type} failed: {e.message}",
                action_type=action.type,
                target=action.target,
                url=page.url,
            ) from e

        return ActionResult(
            action=action,
            success=True,
            url=page.url,
            message=message or "",
            duration_ms=(time.monotonic() - started) * 1000,
        )

    async def _do_navigate(self, page: Page, action: StepAction) -> str:
        url = action.value or action.target
        if not url:
            raise PageNotLoadedError("Navigate action has no URL", action_type=action.type)
        response = await page.goto(url, wait_until="load", timeout=self.navigation_timeout_ms)
        if response is not None and response.status == 401:
            raise AuthRequiredError(
                f"Authentication required for {url}",
                action_type=action.type,
                url=page.url,
            )
        return f"Loaded {page.url}"

    _do_goto = _do_navigate

    async def _do_click(self, page: Page, action: StepAction) -> str:
        await page.locator(action.target).first.click(timeout=self.action_timeout_ms)
        return f"Clicked {action.target}"

    async def _do_fill(self, page: Page, action: StepAction) -> str:
        await page.locator(action.target).first.fill(action.value or "", timeout=self.action_timeout_ms)
        return f"Filled {action.target}"

    _do_type = _do_fill

    async def _do_select(self, page: Page, action: StepAction) -> str:
        await page.locator(action.target).first.select_option(action.value, timeout=self.action_timeout_ms)
        return f"Selected {action.value} in {action.target}"

    async def _do_press(self, page: Page, action: StepAction) -> str:
        key = action.value or "Enter"
        if action.target:
            await page.locator(action.target).first.press(key, timeout=self.action_timeout_ms)
        else:
            await page.keyboard.press(key)
        return f"Pressed {key}"

    async def _do_hover(self, page: Page, action: StepAction) -> str:
        await page.locator(action.target).first.hover(timeout=self.action_timeout_ms)
        return f"Hovered {action.target}"

    async def _do_check(self, page: Page, action: StepAction) -> str:
        await page.locator(action.target).first.check(timeout=self.action_timeout_ms)
        return f"Checked {action.target}"

    async def _do_wait(self, page: Page, action: StepAction) -> str:
        if action.target:
            await page.wait_for_selector(action.target, state="visible", timeout=self.action_timeout_ms)
            return f"{action.target} visible"
        ms = float(action.value or 1000)
        await page.wait_for_timeout(ms)
        return f"Waited {ms:.0f}ms"

    async def _do_assert_visible(self, page: Page, action: StepAction) -> str:
        await page.locator(action.target).first.wait_for(state="visible", timeout=self.action_timeout_ms)
        return f"{action.target} is visible"

    async def _do_assert_text(self, page: Page, action: StepAction) -> str:
        expected = action.value or ""
        if action.target:
            text = await page.locator(action.target).first.inner_text(timeout=self.action_timeout_ms)
        else:
            text = await page.locator("body").inner_text(timeout=self.action_timeout_ms)
        if expected not in text:
            raise StepExecutionError(
                f"Expected text not found: {expected!r}",
                action_type=action.type,
                target=action.target,
                url=page.url,
            )
        return f"Found text {expected!r}"

    # ─────────────────────────────────────────────────────────────────────────
    # Page state
    # ─────────────────────────────────────────────────────────────────────────

    async def snapshot(self, max_elements: int = 200) -> PageSnapshot:
        """Capture the visible, interactable elements and recent error signals."""
        page = self._ensure_started()
        try:
            raw = await page.evaluate(_SNAPSHOT_SCRIPT, max_elements)
        except PlaywrightError as e:
            self.logger.warning(f"Snapshot script failed on {page.url}: {e}")
            raw = []
        try:
            title = await page.title()
        except PlaywrightError:
            title = ""
        return PageSnapshot(
            url=page.url,
            title=title,
            elements=[PageElement.from_dict(item) for item in raw or []],
            console_errors=list(self._console_errors),
            network_errors=list(self._network_errors),
        )
