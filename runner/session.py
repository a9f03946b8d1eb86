from contextlib import asynccontextmanager
from dataclasses import dataclass
from os import getenv
from typing import AsyncIterator, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)

from common.logger import get_logger
from jobs.models import BrowserType, Viewport

# Chromium only; firefox and webkit reject these flags
_CHROMIUM_LAUNCH_ARGS = [
    "--no-sandbox",                 # required in Docker without privileged mode
    "--disable-dev-shm-usage",      # /dev/shm is small in containers, use /tmp
    "--disable-gpu",                # no GPU in a headless container
    "--disable-setuid-sandbox",
    "--disable-extensions",
    "--mute-audio",
]

BROWSER_WS_ENDPOINT = getenv("BROWSER_WS_ENDPOINT")
BROWSER_HEADLESS = getenv("BROWSER_HEADLESS", "true").lower() not in ("0", "false", "no")


@dataclass
class BrowserSession:
    browser: Browser
    context: BrowserContext
    page: Page


class BrowserSessionFactory:
    """Starts the Playwright driver once and hands out one browser per job."""

    def __init__(self, ws_endpoint: Optional[str] = BROWSER_WS_ENDPOINT) -> None:
        self._logger = get_logger(__name__)
        self._ws_endpoint = ws_endpoint
        self._playwright: Optional[Playwright] = None

    async def start(self) -> None:
        self._playwright = await async_playwright().start()

        self._logger.info("The Playwright driver has been started")

    async def stop(self) -> None:
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        self._logger.info("The Playwright driver has been stopped")

    def _ensure_started(self) -> Playwright:
        if self._playwright is None:
            self._logger.error("The Playwright driver is not initialized")
            raise RuntimeError("BrowserSessionFactory is not running.")
        return self._playwright

    async def _launch(self, browser_type: BrowserType) -> Browser:
        engine = getattr(self._ensure_started(), browser_type.value)

        if self._ws_endpoint:
            self._logger.info("Connecting to remote %s at %s", browser_type.value, self._ws_endpoint)
            return await engine.connect(self._ws_endpoint)

        args = _CHROMIUM_LAUNCH_ARGS if browser_type == BrowserType.CHROMIUM else []
        return await engine.launch(headless=BROWSER_HEADLESS, args=args)

    @asynccontextmanager
    async def open(
        self,
        browser_type: BrowserType,
        viewport: Viewport,
        user_agent: str,
    ) -> AsyncIterator[BrowserSession]:
        browser = await self._launch(browser_type)
        try:
            context = await browser.new_context(
                viewport={"width": viewport.width, "height": viewport.height},
                user_agent=user_agent,
                java_script_enabled=True,
                ignore_https_errors=True,
                accept_downloads=False,
            )
            page = await context.new_page()

            yield BrowserSession(browser=browser, context=context, page=page)
        finally:
            await self._close(browser)

    async def _close(self, browser: Browser) -> None:
        try:
            await browser.close()
        except Exception:
            self._logger.exception("Failed to close the browser")

    async def __aenter__(self) -> "BrowserSessionFactory":
        await self.start()
        return self

    async def __aexit__(self, *_) -> None:
        await self.stop()
