"""Job identity plus the storage keys and URLs derived from it.

A screenshot's retrieval path ends with the same ``<id>.png`` name its
storage key ends with, so the API can map one onto the other directly.
"""
import re
import uuid

API_PREFIX = "/api/v1"
SCREENSHOT_SUFFIX = ".png"

_JOB_ID_RE = re.compile(r"^job_[0-9a-f]{32}$")
_SCREENSHOT_NAME_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\.png$")


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def is_valid_job_id(job_id: str) -> bool:
    return bool(job_id) and _JOB_ID_RE.fullmatch(job_id) is not None


def new_screenshot_name() -> str:
    return f"{uuid.uuid4()}{SCREENSHOT_SUFFIX}"


def is_valid_screenshot_name(name: str) -> bool:
    return _SCREENSHOT_NAME_RE.fullmatch(name) is not None


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def trace_key(job_id: str) -> str:
    return f"trace:{job_id}"


def screenshot_prefix(job_id: str) -> str:
    return f"screenshot:{job_id}:"


def screenshot_key(job_id: str, screenshot_name: str) -> str:
    return f"{screenshot_prefix(job_id)}{screenshot_name}"


def job_path(job_id: str) -> str:
    return f"{API_PREFIX}/jobs/{job_id}"


def trace_path(job_id: str) -> str:
    return f"{job_path(job_id)}/trace"


def screenshot_path(job_id: str, screenshot_name: str) -> str:
    return f"{job_path(job_id)}/screenshots/{screenshot_name}"
