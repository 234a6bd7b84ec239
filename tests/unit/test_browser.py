"""Unit tests for browser module error mapping."""
from __future__ import annotations

from typing import Optional

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from browser import SandboxBrowser
from exceptions import (
    AuthRequiredError,
    ElementNotFoundError,
    PageNotLoadedError,
    RuntimeClientError,
    StepExecutionError,
)
from test_types import StepAction


class StubResponse:
    def __init__(self, status: int):
        self.status = status


class StubLocator:
    def __init__(self, page: "StubPage", selector: str):
        self.page = page
        self.selector = selector
        self.first = self

    async def _act(self, name: str):
        self.page.performed.append((name, self.selector))
        if self.page.error is not None:
            raise self.page.error

    async def click(self, timeout: Optional[float] = None):
        await self._act("click")

    async def fill(self, value: str, timeout: Optional[float] = None):
        await self._act("fill")

    async def inner_text(self, timeout: Optional[float] = None) -> str:
        await self._act("inner_text")
        return self.page.text


class StubPage:
    def __init__(self):
        self.url = "https://app.example.com/"
        self.error: Optional[Exception] = None
        self.status = 200
        self.text = ""
        self.performed = []

    def locator(self, selector: str) -> StubLocator:
        return StubLocator(self, selector)

    async def goto(self, url: str, wait_until: str = "load", timeout: Optional[float] = None):
        self.performed.append(("goto", url))
        if self.error is not None:
            raise self.error
        self.url = url
        return StubResponse(self.status)


@pytest.fixture
def session() -> SandboxBrowser:
    browser = SandboxBrowser("ws://127.0.0.1:3001/")
    browser.page = StubPage()
    return browser


class TestPerform:
    """Tests for SandboxBrowser.perform."""

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(RuntimeClientError):
            await SandboxBrowser("ws://127.0.0.1:3001/").perform(StepAction(type="click", target="#a"))

    @pytest.mark.asyncio
    async def test_click(self, session: SandboxBrowser):
        result = await session.perform(StepAction(type="click", target="#go"))
        assert result.success
        assert result.message == "Clicked #go"
        assert session.page.performed == [("click", "#go")]

    @pytest.mark.asyncio
    async def test_navigate_updates_url(self, session: SandboxBrowser):
        result = await session.perform(StepAction(type="navigate", value="https://app.example.com/cart"))
        assert result.url == "https://app.example.com/cart"

    @pytest.mark.asyncio
    async def test_unsupported_action(self, session: SandboxBrowser):
        with pytest.raises(StepExecutionError, match="Unsupported action"):
            await session.perform(StepAction(type="teleport", target="#a"))

    @pytest.mark.asyncio
    async def test_missing_target(self, session: SandboxBrowser):
        with pytest.raises(ElementNotFoundError):
            await session.perform(StepAction(type="click"))

    @pytest.mark.asyncio
    async def test_locator_timeout_means_element_not_found(self, session: SandboxBrowser):
        session.page.error = PlaywrightTimeout("Timeout 5000ms exceeded")
        with pytest.raises(ElementNotFoundError) as exc_info:
            await session.perform(StepAction(type="click", target="#go"))
        assert exc_info.value.target == "#go"
        assert exc_info.value.url == "https://app.example.com/"

    @pytest.mark.asyncio
    async def test_navigation_timeout_means_page_not_loaded(self, session: SandboxBrowser):
        session.page.error = PlaywrightTimeout("Timeout 30000ms exceeded")
        with pytest.raises(PageNotLoadedError):
            await session.perform(StepAction(type="goto", value="https://app.example.com/slow"))

    @pytest.mark.asyncio
    async def test_unauthorized_navigation(self, session: SandboxBrowser):
        session.page.status = 401
        with pytest.raises(AuthRequiredError):
            await session.perform(StepAction(type="navigate", value="https://app.example.com/admin"))

    @pytest.mark.asyncio
    async def test_other_playwright_errors(self, session: SandboxBrowser):
        session.page.error = PlaywrightError("Element is detached")
        with pytest.raises(StepExecutionError) as exc_info:
            await session.perform(StepAction(type="fill", target="#q", value="lamp"))
        assert type(exc_info.value) is StepExecutionError
        assert "Element is detached" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_assert_text(self, session: SandboxBrowser):
        session.page.text = "3 results for lamp"
        await session.perform(StepAction(type="assert_text", target=".results", value="lamp"))
        with pytest.raises(StepExecutionError, match="Expected text not found"):
            await session.perform(StepAction(type="assert_text", target=".results", value="chair"))


class TestSignals:
    """Tests for console and network signal capture."""

    def test_signal_buffers_are_bounded(self, session: SandboxBrowser):
        for i in range(60):
            session._push(session._console_errors, f"error {i}")
        assert len(session._console_errors) == 50
        assert session._console_errors[0] == "error 10"

    def test_http_errors_recorded(self, session: SandboxBrowser):
        session._handle_response(StubResponse(200))
        response = StubResponse(503)
        response.url = "https://api.example.com/items"
        session._handle_response(response)
        assert session._network_errors == ["503 https://api.example.com/items"]
