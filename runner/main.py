import asyncio
import signal
import sys
from typing import Optional

from aio_pika.abc import AbstractIncomingMessage

from rabbit.broker import RabbitMQClient
from jobs.controller import JobController
from jobs.dispatch import RabbitDispatcher
from runner.engine import JobRunner
from runner.session import BrowserSessionFactory
from storage.stores import ArtifactStore, JobStore
from common.logger import get_logger


class RunnerService:
    """Consumes the job queue and executes each job to a terminal state."""

    def __init__(self) -> None:
        self._logger = get_logger(__name__)
        self._rabbit: Optional[RabbitMQClient] = None
        self._sessions: Optional[BrowserSessionFactory] = None
        self._controller: Optional[JobController] = None

    async def start(self) -> None:
        self._rabbit = await RabbitMQClient.wait_for_broker()
        await self._rabbit.declare_all_queues()

        self._sessions = BrowserSessionFactory()
        await self._sessions.start()

        artifacts = ArtifactStore.from_env()
        self._controller = JobController(
            JobStore.from_env(),
            artifacts,
            JobRunner(self._sessions, artifacts),
            dispatcher=RabbitDispatcher(self._rabbit),
        )

        await self._rabbit.consume_jobs(self._process_job)

        self._logger.info("Successfully connected to RabbitMQ")

    async def stop(self) -> None:
        if self._sessions:
            await self._sessions.stop()
        if self._rabbit:
            await self._rabbit.disconnect()

        self._logger.info("Successfully disconnected from RabbitMQ")

    async def _process_job(self, message: AbstractIncomingMessage) -> None:
        # The ack happens only after execute() returns; an unacked delivery
        # from a crashed worker is redelivered and settled as interrupted.
        async with message.process(requeue=False):
            try:
                job = RabbitMQClient.parse_job(message)
            except ValueError:
                self._logger.exception("Dropping malformed job message")
                return

            await self._controller.execute(job.job_id)

    async def __aenter__(self) -> "RunnerService":
        await self.start()
        return self

    async def __aexit__(self, *_) -> None:
        await self.stop()


async def entrypoint() -> None:
    service = RunnerService()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal() -> None:
        stop_event.set()

    if sys.platform != "win32":
        # Unix
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal)
    else:
        # Windows
        def handler(signum, frame):
            loop.call_soon_threadsafe(stop_event.set)

        signal.signal(signal.SIGINT, handler)

        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, handler)

    async with service:
        await stop_event.wait()


def main() -> None:
    asyncio.run(entrypoint())


if __name__ == "__main__":
    main()
