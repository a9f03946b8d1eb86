import time
from dataclasses import dataclass

from playwright.async_api import Page, Request, Response


@dataclass
class NetworkStats:
    """Request/response counters for one page, from creation to teardown."""

    requests: int = 0
    total_bytes: int = 0

    def attach(self, page: Page) -> None:
        page.on("request", self.on_request)
        page.on("response", self.on_response)

    def on_request(self, request: Request) -> None:
        self.requests += 1

    def on_response(self, response: Response) -> None:
        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit():
            self.total_bytes += int(content_length)


@dataclass
class PageTimings:
    """Navigation timings of the most recent goto, in milliseconds."""

    dom_content_loaded: int = 0
    load_time: int = 0


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
