"""Browser session lifecycle: launch on demand, track console output, shut down."""

import asyncio
import logging
import weakref
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    Page,
    Playwright,
    async_playwright,
)

from selector_mcp.matcher import DEFAULT_REF_PREFIX, MATCH_STRATEGIES, AccessibilityNode
from selector_mcp.snapshot import capture_aria_text, capture_snapshot


logger = logging.getLogger(__name__)

MAX_CONSOLE_MESSAGES = 1000
BROWSER_TYPES = ("chromium", "firefox", "webkit")


class Config:
    """Server configuration."""

    def __init__(
        self,
        headless: bool = True,
        browser_type: str = "chromium",
        timeout: int = 30000,
        viewport_width: int = 1280,
        viewport_height: int = 720,
        channel: Optional[str] = None,
        user_data_dir: Optional[str] = None,
        max_accessibility_nodes: int = 500,
        ref_prefix: str = DEFAULT_REF_PREFIX,
        match_strategy: str = "first",
        output_dir: Optional[str] = None,
        max_wait_seconds: float = 10.0,
    ):
        if browser_type not in BROWSER_TYPES:
            raise ValueError(f"Unsupported browser type: {browser_type}")
        if match_strategy not in MATCH_STRATEGIES:
            raise ValueError(f"Unknown match strategy: {match_strategy}")
        self.headless = headless
        self.browser_type = browser_type
        self.timeout = timeout
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.channel = channel
        self.user_data_dir = user_data_dir
        self.max_accessibility_nodes = max_accessibility_nodes
        self.ref_prefix = ref_prefix
        self.match_strategy = match_strategy
        if output_dir:
            self.output_dir = Path(output_dir).expanduser().absolute()
        else:
            self.output_dir = (Path.cwd() / "tmp" / "selector_mcp").absolute()
        self.max_wait_seconds = max_wait_seconds


class BrowserSession:
    """One browser, one context and its current page.

    The browser is started lazily by :meth:`ensure_page` and torn down by
    :meth:`close`; a later ``ensure_page`` starts a fresh one. Sessions share
    no state, so several can run side by side.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.console_messages: Deque[str] = deque(maxlen=MAX_CONSOLE_MESSAGES)
        self._attached_pages: "weakref.WeakSet[Page]" = weakref.WeakSet()
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.context is not None

    async def ensure_page(self) -> Page:
        """Return the current page, launching the browser first if needed."""
        async with self._lock:
            if self.page is not None and not self.page.is_closed():
                return self.page
            if self.context is None:
                await self._launch()
            pages = self.context.pages
            page = pages[0] if pages else await self.context.new_page()
            self._attach_page(page)
            return page

    async def snapshot(self) -> Optional[AccessibilityNode]:
        """Fresh accessibility tree of the current page."""
        page = await self.ensure_page()
        return await capture_snapshot(page)

    async def aria_text(self) -> str:
        page = await self.ensure_page()
        return await capture_aria_text(page)

    def console_text(self) -> str:
        return "\n".join(self.console_messages)

    async def close(self):
        """Close context/browser and stop Playwright. Safe to call repeatedly."""
        async with self._lock:
            context, browser, playwright = self.context, self.browser, self.playwright
            self.context = self.browser = self.playwright = self.page = None

            try:
                if context:
                    await context.close()
                if browser:
                    await browser.close()
            except Exception as exc:
                logger.error("Error closing browser: %s", exc)

            try:
                if playwright:
                    await playwright.stop()
            except Exception as exc:
                logger.error("Error stopping playwright: %s", exc)

    def _attach_page(self, page: Page):
        # The context "page" event also fires for new_page(); listen once per page.
        if page not in self._attached_pages:
            page.set_default_timeout(self.config.timeout)
            page.on("console", self._handle_console)
            self._attached_pages.add(page)
        self.page = page

    def _handle_console(self, message: ConsoleMessage):
        self.console_messages.append(f"[{message.type}] {message.text}")

    async def _launch(self):
        cfg = self.config
        playwright = await async_playwright().start()
        browser_launcher = getattr(playwright, cfg.browser_type)

        launch_options: Dict[str, Any] = {"headless": cfg.headless}
        if cfg.channel:
            launch_options["channel"] = cfg.channel
        context_options: Dict[str, Any] = {
            "viewport": {"width": cfg.viewport_width, "height": cfg.viewport_height},
        }

        browser = None
        context = None
        try:
            if cfg.user_data_dir is not None:
                context = await browser_launcher.launch_persistent_context(
                    cfg.user_data_dir, **launch_options, **context_options
                )
                browser = context.browser
            else:
                browser = await browser_launcher.launch(**launch_options)
                context = await browser.new_context(**context_options)
        except Exception:
            # Partial launch: release whatever started before re-raising.
            try:
                if browser:
                    await browser.close()
            except Exception as close_exc:
                logger.warning("Error closing browser after failed launch: %s", close_exc)
            await playwright.stop()
            raise

        context.on("page", self._handle_new_page)
        self.playwright, self.browser, self.context = playwright, browser, context
        logger.info(
            "Browser started (%s, %s)",
            cfg.browser_type,
            "headless" if cfg.headless else "headed",
        )

    def _handle_new_page(self, page: Page):
        # Popups and new tabs become the current page.
        logger.info("New page opened: %s", page.url)
        self._attach_page(page)
