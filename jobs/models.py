"""Job, configuration and result models.

Python attributes are snake_case, the JSON wire format is camelCase. Both
spellings are accepted on input so that stored snapshots and client requests
go through the same models.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from jobs.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _ConfigModel(WireModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# Locators


_LOCATOR_CALLS = {
    "selector": "locator",
    "label": "getByLabel",
    "text": "getByText",
    "name": "getByName",
    "altText": "getByAltText",
}


class _Locator(_ConfigModel):
    value: str = Field(min_length=1)

    def describe(self) -> str:
        return f'{_LOCATOR_CALLS[self.by]}("{self.value}")'


class SelectorLocator(_Locator):
    by: Literal["selector"] = "selector"


class LabelLocator(_Locator):
    by: Literal["label"] = "label"


class TextLocator(_Locator):
    by: Literal["text"] = "text"
    exact: bool = False


class NameLocator(_Locator):
    """Form field addressed by its accessible name."""

    by: Literal["name"] = "name"


class AltTextLocator(_Locator):
    by: Literal["altText"] = "altText"


Locator = Annotated[
    Union[SelectorLocator, LabelLocator, TextLocator, NameLocator, AltTextLocator],
    Field(discriminator="by"),
]

# Flat request fields accepted on actions, mapped to the locator kind they select
_FLAT_LOCATOR_FIELDS = {
    "getByLabel": "label",
    "getByText": "text",
    "getByName": "name",
    "getByAltText": "altText",
    "selector": "selector",
}


# Actions

_HTTP_URL = TypeAdapter(HttpUrl)


class _Action(_ConfigModel):
    timeout: Optional[int] = Field(default=None, ge=0, le=60_000)

    def describe(self) -> str:
        description = self.type
        text = getattr(self, "text", None)
        url = getattr(self, "url", None)
        locator = getattr(self, "locator", None)

        if text:
            description += f' "{text}"'
        if url is not None:
            description += f" {url}"
        if locator is not None:
            description += f" on {locator.describe()}"

        return description


class _LocatorAction(_Action):
    locator: Optional[Locator] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_locator(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        present = [name for name in _FLAT_LOCATOR_FIELDS if data.get(name) is not None]
        if data.get("locator") is not None:
            present.append("locator")

        if len(present) > 1:
            raise ValueError(f"only one locator may be set, got: {', '.join(present)}")
        if not present or present[0] == "locator":
            return data

        data = dict(data)
        name = present[0]
        raw = data.pop(name)

        if name == "getByText" and isinstance(raw, dict):
            data["locator"] = {"by": "text", "value": raw.get("text"), "exact": raw.get("exact", False)}
        else:
            data["locator"] = {"by": _FLAT_LOCATOR_FIELDS[name], "value": raw}

        return data


class GotoAction(_Action):
    type: Literal["goto"] = "goto"
    url: str

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        # Validated as an http(s) URL, stored as submitted
        try:
            _HTTP_URL.validate_python(value)
        except ValidationError as exc:
            raise ValueError(f"not an absolute http(s) URL: {value!r}") from exc
        return value


class ClickAction(_LocatorAction):
    type: Literal["click"] = "click"
    x: Optional[float] = None
    y: Optional[float] = None


class FillAction(_LocatorAction):
    type: Literal["fill"] = "fill"
    text: Optional[str] = None


class WaitAction(_Action):
    type: Literal["wait"] = "wait"


class ScrollAction(_LocatorAction):
    type: Literal["scroll"] = "scroll"
    x: Optional[float] = None
    y: Optional[float] = None


class ScreenshotAction(_Action):
    type: Literal["screenshot"] = "screenshot"


class ExpectAction(_LocatorAction):
    type: Literal["expect"] = "expect"
    locator: Locator
    to_contain_text: Optional[str] = None
    to_be_visible: Optional[bool] = None

    @model_validator(mode="after")
    def _check_assertion(self) -> "ExpectAction":
        if self.to_contain_text is None and not self.to_be_visible:
            raise ValueError("expect needs toContainText or toBeVisible")
        return self


Action = Annotated[
    Union[
        GotoAction,
        ClickAction,
        FillAction,
        WaitAction,
        ScrollAction,
        ScreenshotAction,
        ExpectAction,
    ],
    Field(discriminator="type"),
]


# Configuration


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class BrowserType(str, Enum):
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


class Viewport(_ConfigModel):
    width: int = Field(ge=320, le=1920)
    height: int = Field(ge=240, le=1080)


class JobOptions(_ConfigModel):
    timeout: Optional[int] = Field(default=None, ge=1_000, le=300_000)
    viewport: Optional[Viewport] = None
    user_agent: Optional[str] = None
    generate_trace: bool = False


class JobConfig(_ConfigModel):
    device_type: DeviceType = Field(examples=["desktop"])
    browser_type: BrowserType = Field(examples=["chromium"])
    actions: List[Action] = Field(
        min_length=1,
        max_length=50,
        examples=[[{"type": "goto", "url": "https://example.com"}, {"type": "screenshot"}]],
    )
    options: JobOptions = Field(default_factory=JobOptions)


# Results


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"


class Statistics(WireModel):
    load_time: int = 0
    dom_content_loaded: int = 0
    network_requests: int = 0
    total_bytes: int = 0
    screenshots: List[str] = Field(default_factory=list)
    final_url: str = ""


class ErrorInfo(WireModel):
    message: str
    stack: Optional[str] = None
    screenshot: Optional[str] = None


class TraceStep(WireModel):
    action: str
    timestamp: datetime = Field(default_factory=utcnow)
    duration: int
    success: bool
    error: Optional[str] = None
    screenshot: Optional[str] = None


class Trace(WireModel):
    steps: List[TraceStep] = Field(default_factory=list)
    trace_file: Optional[str] = None
    trace_viewer_url: Optional[str] = None


class JobResult(WireModel):
    status: ResultStatus
    duration: int
    timestamp: datetime = Field(default_factory=utcnow)
    statistics: Optional[Statistics] = None
    error: Optional[ErrorInfo] = None
    trace: Optional[Trace] = None

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        duration: int = 0,
        stack: Optional[str] = None,
        screenshot: Optional[str] = None,
        trace: Optional[Trace] = None,
    ) -> "JobResult":
        return cls(
            status=ResultStatus.FAIL,
            duration=duration,
            error=ErrorInfo(message=message or "Unknown error", stack=stack, screenshot=screenshot),
            trace=trace,
        )


# Job


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class Job(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    config: JobConfig
    result: Optional[JobResult] = None

    @model_validator(mode="after")
    def _check_terminal_fields(self) -> "Job":
        terminal = self.status.is_terminal
        if terminal != (self.result is not None) or terminal != (self.completed_at is not None):
            raise ValueError("result and completedAt must be set exactly when the job is finished")
        return self

    def _transition(self, status: JobStatus, **update: Any) -> "Job":
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status, **update})

    def start(self) -> "Job":
        return self._transition(JobStatus.RUNNING)

    def finish(self, result: JobResult) -> "Job":
        status = JobStatus.COMPLETED if result.status == ResultStatus.SUCCESS else JobStatus.FAILED
        return self._transition(status, completed_at=utcnow(), result=result)
