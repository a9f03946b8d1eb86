import time
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import Locator as PlaywrightLocator, Page, expect

from common.logger import get_logger
from jobs.models import (
    AltTextLocator,
    ClickAction,
    ExpectAction,
    FillAction,
    GotoAction,
    LabelLocator,
    Locator,
    NameLocator,
    ScreenshotAction,
    ScrollAction,
    SelectorLocator,
    TextLocator,
    WaitAction,
)
from runner.stats import PageTimings, elapsed_ms
from storage.stores import ArtifactStore

DEFAULT_WAIT_MS = 1_000


@dataclass
class StepOutcome:
    screenshot: Optional[str] = None


def resolve_locator(page: Page, locator: Optional[Locator]) -> Optional[PlaywrightLocator]:
    if locator is None:
        return None
    if isinstance(locator, LabelLocator):
        return page.get_by_label(locator.value)
    if isinstance(locator, TextLocator):
        return page.get_by_text(locator.value, exact=locator.exact)
    if isinstance(locator, NameLocator):
        return page.get_by_role("textbox", name=locator.value)
    if isinstance(locator, AltTextLocator):
        return page.get_by_alt_text(locator.value)
    if isinstance(locator, SelectorLocator):
        return page.locator(locator.value)
    raise TypeError(f"Unsupported locator: {locator!r}")


class ActionExecutor:
    """Runs single actions against one page.

    Element actions act on the first match of their locator. Errors are not
    handled here; the caller records them and stops the job.
    """

    def __init__(
        self,
        page: Page,
        job_id: str,
        artifacts: ArtifactStore,
        timings: PageTimings,
    ) -> None:
        self._logger = get_logger(__name__)
        self._page = page
        self._job_id = job_id
        self._artifacts = artifacts
        self._timings = timings
        self._handlers = {
            "goto": self._goto,
            "click": self._click,
            "fill": self._fill,
            "wait": self._wait,
            "scroll": self._scroll,
            "screenshot": self._screenshot,
            "expect": self._expect,
        }

    async def execute(self, action) -> StepOutcome:
        self._logger.debug("Job %s: %s", self._job_id, action.describe())
        outcome = await self._handlers[action.type](action)
        return outcome or StepOutcome()

    async def _goto(self, action: GotoAction) -> None:
        started = time.monotonic()
        await self._page.goto(action.url, wait_until="domcontentloaded", timeout=action.timeout)
        self._timings.dom_content_loaded = elapsed_ms(started)

        await self._page.wait_for_load_state("load", timeout=action.timeout)
        self._timings.load_time = elapsed_ms(started)

    async def _click(self, action: ClickAction) -> None:
        target = resolve_locator(self._page, action.locator)
        if target is not None:
            await target.first.click(timeout=action.timeout)
        elif action.x is not None and action.y is not None:
            await self._page.mouse.click(action.x, action.y)

    async def _fill(self, action: FillAction) -> None:
        target = resolve_locator(self._page, action.locator)
        if target is not None and action.text is not None:
            await target.first.fill(action.text, timeout=action.timeout)

    async def _wait(self, action: WaitAction) -> None:
        await self._page.wait_for_timeout(action.timeout or DEFAULT_WAIT_MS)

    async def _scroll(self, action: ScrollAction) -> None:
        target = resolve_locator(self._page, action.locator)
        if target is not None:
            await target.first.scroll_into_view_if_needed(timeout=action.timeout)
        elif action.x is not None and action.y is not None:
            await self._page.mouse.wheel(action.x, action.y)

    async def _expect(self, action: ExpectAction) -> None:
        target = resolve_locator(self._page, action.locator).first

        if action.to_contain_text is not None:
            await expect(target).to_contain_text(action.to_contain_text, timeout=action.timeout)
        if action.to_be_visible:
            await expect(target).to_be_visible(timeout=action.timeout)

    async def _screenshot(self, action: ScreenshotAction) -> StepOutcome:
        image: bytes = await self._page.screenshot(full_page=True, type="png", timeout=action.timeout)
        path = await self._artifacts.put_screenshot(self._job_id, image)

        self._logger.info("Job %s: screenshot stored at %s", self._job_id, path)
        return StepOutcome(screenshot=path)
