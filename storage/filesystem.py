import asyncio
import errno
import time
import uuid
from os import getenv
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote

from common.logger import get_logger

DEFAULT_TTL_SECONDS = int(getenv("JOB_TTL_SECONDS", 24 * 60 * 60))


def _is_missing(error: OSError) -> bool:
    # A name too long for the filesystem can never have been stored
    return isinstance(error, FileNotFoundError) or error.errno == errno.ENAMETOOLONG


class FileKVStore:
    """Blob store keyed by arbitrary strings, one file per key.

    Every write restarts the entry's time-to-live. Expired entries read as
    missing and are removed lazily or by ``purge_expired``.
    """

    def __init__(self, directory: Path | str, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self._logger = get_logger(__name__)
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._ttl = ttl_seconds

    async def put(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._write_file, self._build_path(key), data)

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read_file, self._build_path(key))

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_file, self._build_path(key))

    async def list_keys(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self._list_keys, prefix)

    async def purge_expired(self) -> int:
        removed = await asyncio.to_thread(self._purge_expired)
        if removed:
            self._logger.info("Removed %d expired entries from %s", removed, self._directory)
        return removed

    def _build_path(self, key: str) -> Path:
        if not key or key.startswith("."):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._directory / quote(key, safe="")

    def _is_expired(self, path: Path) -> bool:
        return time.time() - path.stat().st_mtime > self._ttl

    def _read_file(self, path: Path) -> Optional[bytes]:
        try:
            if self._is_expired(path):
                path.unlink(missing_ok=True)
                return None
            return path.read_bytes()
        except OSError as e:
            if _is_missing(e):
                return None
            raise

    @staticmethod
    def _delete_file(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            if not _is_missing(e):
                raise

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        tmp_path = path.with_name(f".{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(data)
            tmp_path.replace(path)

        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise OSError(f"Error writing storage file {path}: {e}") from e

    def _list_keys(self, prefix: str) -> List[str]:
        keys = []
        for path in self._directory.iterdir():
            if path.name.startswith("."):
                continue
            key = unquote(path.name)
            try:
                if key.startswith(prefix) and not self._is_expired(path):
                    keys.append(key)
            except FileNotFoundError:
                continue

        return sorted(keys)

    def _purge_expired(self) -> int:
        removed = 0
        for path in self._directory.iterdir():
            if path.name.startswith("."):
                continue
            try:
                if self._is_expired(path):
                    path.unlink(missing_ok=True)
                    removed += 1
            except FileNotFoundError:
                continue

        return removed
