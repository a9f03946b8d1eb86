"""Job identity, state transitions and the background execution body.

Every state write for a job happens inside ``execute``, which runs once per
job id: pending -> running -> completed | failed. No lock is taken; ids are
generated here, so no second writer can exist. A delete that lands while a
job runs wins: its terminal record is dropped along with the run's artifacts.
"""
import asyncio
import time
import traceback
from typing import Optional

from common.logger import get_logger, job_context
from jobs.dispatch import Dispatcher, LocalDispatcher
from jobs.errors import (
    ArtifactNotFoundError,
    DispatchError,
    InvalidJobIdError,
    JobNotFoundError,
)
from jobs.models import Job, JobConfig, JobResult, JobStatus
from runner.engine import JobRunner
from runner.stats import elapsed_ms
from storage import keys
from storage.stores import ArtifactStore, JobStore


class JobController:
    def __init__(
        self,
        jobs: JobStore,
        artifacts: ArtifactStore,
        runner: Optional[JobRunner] = None,
        dispatcher: Optional[Dispatcher] = None,
    ) -> None:
        self._logger = get_logger(__name__)
        self._jobs = jobs
        self._artifacts = artifacts
        self._runner = runner
        self.dispatcher: Dispatcher = dispatcher or LocalDispatcher(self.execute)

    async def submit(self, config: JobConfig) -> Job:
        job = Job(id=keys.new_job_id(), config=config)
        await self._jobs.save(job)

        try:
            await self.dispatcher.dispatch(job.id)
        except Exception as exc:
            self._logger.exception("Failed to dispatch job %s", job.id)
            await self._jobs.save(
                job.finish(JobResult.failure(f"Failed to dispatch job: {exc}", stack=traceback.format_exc()))
            )
            raise DispatchError(str(exc)) from exc

        self._logger.info(
            "Job %s submitted: %d actions on %s/%s",
            job.id, len(config.actions), config.browser_type.value, config.device_type.value,
        )
        return job

    async def execute(self, job_id: str) -> Optional[Job]:
        """Run a submitted job and persist its terminal record."""
        if self._runner is None:
            raise RuntimeError("JobController has no runner; it can only submit jobs")

        with job_context(job_id):
            return await self._execute(job_id)

    async def _execute(self, job_id: str) -> Optional[Job]:
        job = await self._jobs.load(job_id)
        if job is None:
            self._logger.warning("Job %s not found, nothing to execute", job_id)
            return None

        if job.status.is_terminal:
            self._logger.info("Job %s is already %s, skipping", job_id, job.status.value)
            return job

        if job.status == JobStatus.RUNNING:
            # A previous execution died before writing its terminal record
            return await self._fail_interrupted(job)

        started = time.monotonic()
        try:
            running = job.start()
            await self._jobs.save(running)
            self._logger.info("Job %s is running", job_id)

            result = await self._runner.run(job_id, job.config)

            finished = running.finish(result)
            stored = await self._store_terminal(finished)
        except Exception as exc:
            self._logger.exception("Job %s execution failed outside the runner", job_id)
            finished = job.finish(
                JobResult.failure(
                    str(exc) or "Test execution failed",
                    duration=elapsed_ms(started),
                    stack=traceback.format_exc(),
                )
            )
            stored = await self._store_terminal(finished)

        if not stored:
            return None

        self._logger.info("Job %s is %s", job_id, finished.status.value)
        return finished

    async def get(self, job_id: str) -> Job:
        job = None
        if keys.is_valid_job_id(job_id):
            job = await self._jobs.load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def delete(self, job_id: str) -> None:
        if not keys.is_valid_job_id(job_id):
            raise InvalidJobIdError(job_id)

        await self.get(job_id)

        _, removed = await asyncio.gather(
            self._jobs.delete(job_id),
            self._delete_artifacts(job_id),
        )

        self._logger.info("Job %s deleted with %d screenshots", job_id, removed)

    async def fetch_trace(self, job_id: str) -> bytes:
        bundle = None
        if keys.is_valid_job_id(job_id):
            bundle = await self._artifacts.get_trace(job_id)
        if bundle is None:
            raise ArtifactNotFoundError(keys.trace_key(job_id))
        return bundle

    async def fetch_screenshot(self, job_id: str, screenshot_name: str) -> bytes:
        image = None
        if keys.is_valid_job_id(job_id) and keys.is_valid_screenshot_name(screenshot_name):
            image = await self._artifacts.get_screenshot(job_id, screenshot_name)
        if image is None:
            raise ArtifactNotFoundError(keys.screenshot_key(job_id, screenshot_name))
        return image

    async def recover_interrupted(self) -> int:
        """Settle jobs left behind by a previous process.

        Running jobs are failed, pending jobs are dispatched again.
        """
        recovered = 0
        for job in await self._jobs.list_jobs():
            if job.status == JobStatus.RUNNING:
                await self._fail_interrupted(job)
                recovered += 1
            elif job.status == JobStatus.PENDING:
                await self.dispatcher.dispatch(job.id)
                recovered += 1

        if recovered:
            self._logger.info("Recovered %d unfinished jobs", recovered)
        return recovered

    async def _fail_interrupted(self, job: Job) -> Job:
        self._logger.warning("Job %s was interrupted while running, marking it failed", job.id)
        failed = job.finish(JobResult.failure("Job execution was interrupted before completion"))
        await self._jobs.save(failed)
        return failed

    async def _store_terminal(self, job: Job) -> bool:
        # A delete issued while the job ran wins over its result
        if await self._jobs.load(job.id) is None:
            self._logger.info("Job %s was deleted while running, discarding its result", job.id)
            await self._delete_artifacts(job.id)
            return False

        await self._jobs.save(job)
        return True

    async def _delete_artifacts(self, job_id: str) -> int:
        await self._artifacts.delete_trace(job_id)
        return await self._artifacts.delete_screenshots(job_id)
