import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "/runtime/logs")
LOG_FILENAME = os.getenv("LOG_FILENAME", "playwright-jobs")
LOG_FILE_MAX_MB = int(os.getenv("LOG_FILE_MAX_MB", 10))
LOG_FILE_BACKUPS = int(os.getenv("LOG_FILE_BACKUPS", 5))

# Libraries that are chatty at INFO
_QUIET_LOGGERS = ("aio_pika", "aiormq", "playwright", "uvicorn.access")

_current_job: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("current_job", default=None)
_configured = False


class _JobContextFilter(logging.Filter):
    """Stamps every record with the job being executed on this task, if any."""

    def filter(self, record: logging.LogRecord) -> bool:
        job_id = _current_job.get()
        record.job = f" [{job_id}]" if job_id else ""
        return True


class _TextFormatter(logging.Formatter):
    _LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    _RESET = "\033[0m"

    FMT = "%(asctime)s [%(levelname)-8s] %(name)s%(job)s: %(message)s"
    DATETIMEFMT = "%Y-%m-%d %H:%M:%S"

    def __init__(self, colored: bool = False) -> None:
        super().__init__(fmt=self.FMT, datefmt=self.DATETIMEFMT)
        self._colored = colored

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "job"):
            record.job = ""
        line = super().format(record)
        if not self._colored:
            return line
        return f"{self._LEVEL_COLORS.get(record.levelno, '')}{line}{self._RESET}"


def _rotating_file_handler(directory: Path) -> logging.Handler:
    directory.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        filename=directory / f"{LOG_FILENAME}.log",
        maxBytes=LOG_FILE_MAX_MB * 1024 * 1024,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setFormatter(_TextFormatter(colored=False))
    return handler


def _configure() -> None:
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)

    if not root.handlers:
        console = logging.StreamHandler()
        console.setFormatter(_TextFormatter(colored=True))
        console.addFilter(_JobContextFilter())
        root.addHandler(console)

        # An empty LOG_DIR keeps logging on the console only
        if LOG_DIR:
            try:
                file_handler = _rotating_file_handler(Path(LOG_DIR))
            except OSError as e:
                logging.getLogger(__name__).warning(
                    "File logging disabled: cannot create log file in '%s': %s", LOG_DIR, e
                )
            else:
                file_handler.addFilter(_JobContextFilter())
                root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with ``job_id``."""
    token = _current_job.set(job_id)
    try:
        yield
    finally:
        _current_job.reset(token)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    _configure()
    return logging.getLogger(name)
