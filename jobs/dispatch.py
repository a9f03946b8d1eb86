"""Hand-off of submitted jobs to whatever executes them.

``LocalDispatcher`` runs jobs as tasks on the current event loop.
``RabbitDispatcher`` publishes them to the job queue, where the worker
service (``runner.main``) picks them up.
"""
import asyncio
from functools import partial
from os import getenv
from typing import Awaitable, Callable, Dict, Optional, Protocol

from common.logger import get_logger
from rabbit.broker import RabbitMQClient

SHUTDOWN_GRACE_SECONDS = float(getenv("JOB_SHUTDOWN_GRACE_SECONDS", 10))


class Dispatcher(Protocol):
    async def dispatch(self, job_id: str) -> None: ...

    async def close(self) -> None: ...


class LocalDispatcher:
    def __init__(
        self,
        handler: Callable[[str], Awaitable[object]],
        shutdown_grace: float = SHUTDOWN_GRACE_SECONDS,
    ) -> None:
        self._logger = get_logger(__name__)
        self._handler = handler
        self._shutdown_grace = shutdown_grace
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def dispatch(self, job_id: str) -> None:
        task = asyncio.create_task(self._handler(job_id), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(partial(self._on_done, job_id))

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            self._logger.warning("Job %s task was cancelled", job_id)
        elif task.exception() is not None:
            self._logger.error("Job %s task crashed", job_id, exc_info=task.exception())

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for running jobs to finish; returns how many are still running."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
            # Let done callbacks settle the bookkeeping
            await asyncio.sleep(0)
        return self.pending_count

    async def close(self) -> None:
        if self.pending_count:
            self._logger.info(
                "Waiting up to %.0fs for %d running jobs", self._shutdown_grace, self.pending_count
            )
        if not await self.drain(self._shutdown_grace):
            return

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._logger.warning("Cancelled %d unfinished jobs", len(tasks))


class RabbitDispatcher:
    def __init__(self, rabbit: RabbitMQClient) -> None:
        self._rabbit = rabbit

    async def dispatch(self, job_id: str) -> None:
        await self._rabbit.publish_job(job_id)

    async def close(self) -> None:
        await self._rabbit.disconnect()
