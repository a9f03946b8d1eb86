import asyncio
import tempfile
import time
import traceback
from dataclasses import dataclass, field
from os import getenv
from pathlib import Path
from typing import List, Optional

from playwright.async_api import Page

from common.logger import get_logger
from jobs.devices import resolve_device
from jobs.models import (
    JobConfig,
    JobResult,
    ResultStatus,
    Statistics,
    Trace,
    TraceStep,
)
from runner.actions import ActionExecutor
from runner.session import BrowserSession, BrowserSessionFactory
from runner.stats import NetworkStats, PageTimings, elapsed_ms
from storage import keys
from storage.stores import ArtifactStore

DEFAULT_TIMEOUT_MS = 30_000

PUBLIC_BASE_URL = getenv("PUBLIC_BASE_URL", "http://localhost:8000")
TRACE_VIEWER_URL = getenv("TRACE_VIEWER_URL", "https://trace.playwright.dev")


@dataclass
class _RunState:
    """Everything one run accumulates; never shared between runs."""

    steps: List[TraceStep] = field(default_factory=list)
    screenshots: List[str] = field(default_factory=list)
    network: NetworkStats = field(default_factory=NetworkStats)
    timings: PageTimings = field(default_factory=PageTimings)
    diagnostic: Optional[str] = None
    diagnostic_attempted: bool = False
    trace_file: Optional[str] = None
    trace_viewer_url: Optional[str] = None
    final_url: str = ""

    def trace(self) -> Trace:
        return Trace(
            steps=list(self.steps),
            trace_file=self.trace_file,
            trace_viewer_url=self.trace_viewer_url,
        )


class JobRunner:
    """Executes one job's actions in order inside a dedicated browser session."""

    def __init__(
        self,
        sessions: BrowserSessionFactory,
        artifacts: ArtifactStore,
        public_base_url: str = PUBLIC_BASE_URL,
        trace_viewer_url: str = TRACE_VIEWER_URL,
    ) -> None:
        self._logger = get_logger(__name__)
        self._sessions = sessions
        self._artifacts = artifacts
        self._public_base_url = public_base_url.rstrip("/")
        self._trace_viewer_url = trace_viewer_url.rstrip("/")

    async def run(self, job_id: str, config: JobConfig) -> JobResult:
        started = time.monotonic()
        state = _RunState()
        viewport, user_agent = resolve_device(config)

        try:
            async with self._sessions.open(config.browser_type, viewport, user_agent) as session:
                try:
                    await self._drive(job_id, config, session, state)
                except Exception:
                    if not state.diagnostic_attempted:
                        state.diagnostic_attempted = True
                        state.diagnostic = await self._capture_diagnostic(job_id, session.page)
                    raise

        except Exception as exc:
            self._logger.warning("Job %s failed after %d steps: %s", job_id, len(state.steps), exc)
            return JobResult.failure(
                str(exc),
                duration=elapsed_ms(started),
                stack=traceback.format_exc(),
                screenshot=state.diagnostic,
                trace=state.trace(),
            )

        self._logger.info("Job %s finished %d actions", job_id, len(state.steps))
        return JobResult(
            status=ResultStatus.SUCCESS,
            duration=elapsed_ms(started),
            statistics=Statistics(
                load_time=state.timings.load_time,
                dom_content_loaded=state.timings.dom_content_loaded,
                network_requests=state.network.requests,
                total_bytes=state.network.total_bytes,
                screenshots=state.screenshots,
                final_url=state.final_url,
            ),
            trace=state.trace(),
        )

    async def _drive(
        self,
        job_id: str,
        config: JobConfig,
        session: BrowserSession,
        state: _RunState,
    ) -> None:
        page = session.page
        page.set_default_timeout(config.options.timeout or DEFAULT_TIMEOUT_MS)
        state.network.attach(page)

        if config.options.generate_trace:
            await session.context.tracing.start(screenshots=True, snapshots=True)

        executor = ActionExecutor(page, job_id, self._artifacts, state.timings)

        for action in config.actions:
            step_started = time.monotonic()
            try:
                outcome = await executor.execute(action)
            except Exception as exc:
                state.diagnostic_attempted = True
                state.diagnostic = await self._capture_diagnostic(job_id, page)
                state.steps.append(
                    TraceStep(
                        action=action.describe(),
                        duration=elapsed_ms(step_started),
                        success=False,
                        error=str(exc) or type(exc).__name__,
                        screenshot=state.diagnostic,
                    )
                )
                raise

            if outcome.screenshot:
                state.screenshots.append(outcome.screenshot)
            state.steps.append(
                TraceStep(
                    action=action.describe(),
                    duration=elapsed_ms(step_started),
                    success=True,
                    screenshot=outcome.screenshot,
                )
            )

        if config.options.generate_trace:
            await self._save_trace(job_id, session, state)

        state.final_url = page.url

    async def _save_trace(self, job_id: str, session: BrowserSession, state: _RunState) -> None:
        with tempfile.TemporaryDirectory(prefix="trace-") as tmp_dir:
            trace_file = Path(tmp_dir) / "trace.zip"
            await session.context.tracing.stop(path=str(trace_file))
            bundle = await asyncio.to_thread(trace_file.read_bytes)

        state.trace_file = await self._artifacts.put_trace(job_id, bundle)
        state.trace_viewer_url = (
            f"{self._trace_viewer_url}/?trace={self._public_base_url}{keys.trace_path(job_id)}"
        )

    async def _capture_diagnostic(self, job_id: str, page: Page) -> Optional[str]:
        """Best-effort screenshot of the page as the failure left it."""
        try:
            image = await page.screenshot(full_page=True, type="png")
            return await self._artifacts.put_screenshot(job_id, image)
        except Exception:
            self._logger.warning("Job %s: diagnostic screenshot failed", job_id, exc_info=True)
            return None
