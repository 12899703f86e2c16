"""Automation capability: the engine's only door to a browser."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from autoflow.core.types import PageDebugInfo

logger = logging.getLogger(__name__)


class AutomationCapability(ABC):
    """Opens a page, acts on it by selector, and returns DOM snapshots."""

    async def open_session(self, record_video: bool = False) -> None:
        """Prepare a browser session for one execution. Default: nothing to do."""

    async def close_session(self) -> None:
        """Release whatever open_session acquired."""

    @abstractmethod
    async def navigate(self, url: str, *, timeout: int, wait_until: str = "load") -> None: ...

    @abstractmethod
    async def click(self, selector: str, *, timeout: int) -> None: ...

    @abstractmethod
    async def type_text(self, selector: str, text: str, *, timeout: int, clear: bool = True) -> None: ...

    @abstractmethod
    async def extract(self, selector: str, *, timeout: int, attribute: str | None = None) -> str | None: ...

    @abstractmethod
    async def wait_for(self, selector: str, *, timeout: int, state: str = "visible") -> None: ...

    @abstractmethod
    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    @abstractmethod
    def current_url(self) -> str: ...

    @abstractmethod
    async def capture_debug_info(self) -> PageDebugInfo: ...


class PlaywrightCapability(AutomationCapability):
    """
    AutomationCapability backed by Playwright's async API.

    Constructed around an existing ``page`` it only drives that page; with no
    page it launches and owns a browser per session.
    """

    def __init__(
        self,
        page: Page | None = None,
        *,
        browser: str = "chromium",
        headless: bool = True,
        video_dir: str = "recordings",
    ) -> None:
        self._page = page
        self._owns_browser = page is None
        self._browser_name = browser
        self._headless = headless
        self._video_dir = video_dir
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("PlaywrightCapability.open_session() must be called before using the page")
        return self._page

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def open_session(self, record_video: bool = False) -> None:
        if not self._owns_browser:
            return
        await self.close_session()
        self._playwright = await async_playwright().start()
        launcher = getattr(self._playwright, self._browser_name)
        self._browser = await launcher.launch(headless=self._headless)
        context_kwargs: dict[str, Any] = {}
        if record_video:
            context_kwargs["record_video_dir"] = self._video_dir
        self._context = await self._browser.new_context(**context_kwargs)
        self._page = await self._context.new_page()
        logger.info(f"Launched {self._browser_name} (headless={self._headless}, video={record_video})")

    async def close_session(self) -> None:
        if not self._owns_browser:
            return
        context, browser, playwright = self._context, self._browser, self._playwright
        self._context = None
        self._browser = None
        self._playwright = None
        self._page = None
        try:
            if context is not None:
                await context.close()
        finally:
            try:
                if browser is not None:
                    await browser.close()
            finally:
                if playwright is not None:
                    await playwright.stop()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def navigate(self, url: str, *, timeout: int, wait_until: str = "load") -> None:
        await self.page.goto(url, timeout=timeout, wait_until=wait_until)

    async def click(self, selector: str, *, timeout: int) -> None:
        await self.page.locator(selector).click(timeout=timeout)

    async def type_text(self, selector: str, text: str, *, timeout: int, clear: bool = True) -> None:
        loc = self.page.locator(selector)
        if clear:
            await loc.fill(text, timeout=timeout)
        else:
            await loc.press_sequentially(text, timeout=timeout)

    async def extract(self, selector: str, *, timeout: int, attribute: str | None = None) -> str | None:
        loc = self.page.locator(selector)
        await loc.wait_for(state="attached", timeout=timeout)
        if attribute:
            return await loc.get_attribute(attribute, timeout=timeout)
        return await loc.inner_text(timeout=timeout)

    async def wait_for(self, selector: str, *, timeout: int, state: str = "visible") -> None:
        await self.page.locator(selector).wait_for(state=state, timeout=timeout)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self.page.evaluate(script, arg)

    def current_url(self) -> str:
        return self._page.url if self._page is not None else ""

    async def capture_debug_info(self) -> PageDebugInfo:
        page = self.page
        return PageDebugInfo(page_url=page.url, page_source=await page.content())
