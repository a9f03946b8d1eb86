import asyncio
from os import getenv
from pathlib import Path
from typing import List, Optional

from common.logger import get_logger
from jobs.models import Job
from storage import keys
from storage.filesystem import FileKVStore

STORAGE_DIR = getenv("STORAGE_DIR", "/runtime")


class JobStore:
    """Job snapshots, each write replacing the previous one wholesale."""

    def __init__(self, kv: FileKVStore) -> None:
        self._kv = kv

    @classmethod
    def from_env(cls) -> "JobStore":
        return cls(FileKVStore(Path(STORAGE_DIR) / "jobs"))

    async def save(self, job: Job) -> None:
        data = job.model_dump_json(by_alias=True, exclude_none=True)
        await self._kv.put(keys.job_key(job.id), data.encode("utf-8"))

    async def load(self, job_id: str) -> Optional[Job]:
        data = await self._kv.get(keys.job_key(job_id))
        if data is None:
            return None
        return Job.model_validate_json(data)

    async def delete(self, job_id: str) -> None:
        await self._kv.delete(keys.job_key(job_id))

    async def list_jobs(self) -> List[Job]:
        jobs = []
        for key in await self._kv.list_keys("job:"):
            job = await self.load(key.removeprefix("job:"))
            if job is not None:
                jobs.append(job)
        return jobs

    async def purge_expired(self) -> int:
        return await self._kv.purge_expired()


class ArtifactStore:
    """Screenshots and trace bundles, written once per key."""

    def __init__(self, kv: FileKVStore) -> None:
        self._logger = get_logger(__name__)
        self._kv = kv

    @classmethod
    def from_env(cls) -> "ArtifactStore":
        return cls(FileKVStore(Path(STORAGE_DIR) / "artifacts"))

    async def put_screenshot(self, job_id: str, image: bytes) -> str:
        """Store a PNG under a fresh name and return its retrieval path."""
        name = keys.new_screenshot_name()
        await self._kv.put(keys.screenshot_key(job_id, name), image)
        return keys.screenshot_path(job_id, name)

    async def get_screenshot(self, job_id: str, screenshot_name: str) -> Optional[bytes]:
        return await self._kv.get(keys.screenshot_key(job_id, screenshot_name))

    async def put_trace(self, job_id: str, bundle: bytes) -> str:
        await self._kv.put(keys.trace_key(job_id), bundle)
        self._logger.info("Stored trace bundle for job %s (%d bytes)", job_id, len(bundle))
        return keys.trace_path(job_id)

    async def get_trace(self, job_id: str) -> Optional[bytes]:
        return await self._kv.get(keys.trace_key(job_id))

    async def delete_trace(self, job_id: str) -> None:
        await self._kv.delete(keys.trace_key(job_id))

    async def delete_screenshots(self, job_id: str) -> int:
        screenshot_keys = await self._kv.list_keys(keys.screenshot_prefix(job_id))
        results = await asyncio.gather(
            *(self._kv.delete(key) for key in screenshot_keys),
            return_exceptions=True,
        )

        failed = 0
        for key, result in zip(screenshot_keys, results):
            if isinstance(result, Exception):
                failed += 1
                self._logger.warning("Failed to delete screenshot %s: %s", key, result)

        return len(screenshot_keys) - failed

    async def purge_expired(self) -> int:
        return await self._kv.purge_expired()
