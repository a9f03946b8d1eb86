"""Queue worker and browser session plumbing."""
import json
import logging
from contextlib import asynccontextmanager

import pytest
from aio_pika import DeliveryMode

from common.logger import _JobContextFilter, job_context
from jobs.models import BrowserType, Viewport
from rabbit.broker import QUEUE_TEST_JOBS, RabbitMQClient
from runner.main import RunnerService
from runner.session import BrowserSessionFactory


class FakeMessage:
    def __init__(self, body):
        self.body = body
        self.processed_with = None

    @asynccontextmanager
    async def process(self, requeue=True):
        self.processed_with = requeue
        yield


class RecordingController:
    def __init__(self):
        self.executed = []

    async def execute(self, job_id):
        self.executed.append(job_id)


@pytest.fixture
def service():
    service = RunnerService()
    service._controller = RecordingController()
    return service


@pytest.mark.asyncio
async def test_worker_executes_queued_job(service):
    message = FakeMessage(json.dumps({"job_id": "job_1"}).encode())

    await service._process_job(message)

    assert service._controller.executed == ["job_1"]
    assert message.processed_with is False


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"not json", json.dumps({"id": "job_1"}).encode()])
async def test_worker_drops_malformed_messages(service, body):
    await service._process_job(FakeMessage(body))

    assert service._controller.executed == []


class FakeContext:
    def __init__(self, options):
        self.options = options

    async def new_page(self):
        return "page"


class FakeBrowser:
    def __init__(self, close_error=None):
        self.contexts = []
        self.closed = False
        self.close_error = close_error

    async def new_context(self, **options):
        context = FakeContext(options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeEngine:
    def __init__(self, browser):
        self.browser = browser
        self.launched_with = None
        self.connected_to = None

    async def launch(self, **options):
        self.launched_with = options
        return self.browser

    async def connect(self, ws_endpoint):
        self.connected_to = ws_endpoint
        return self.browser


class FakePlaywright:
    def __init__(self, browser):
        self.chromium = FakeEngine(browser)
        self.firefox = FakeEngine(browser)
        self.webkit = FakeEngine(browser)


def _factory(browser, ws_endpoint=None):
    factory = BrowserSessionFactory(ws_endpoint=ws_endpoint)
    factory._playwright = FakePlaywright(browser)
    return factory


@pytest.mark.asyncio
async def test_session_uses_viewport_and_user_agent():
    browser = FakeBrowser()
    factory = _factory(browser)

    async with factory.open(BrowserType.CHROMIUM, Viewport(width=375, height=667), "agent/1.0") as session:
        assert session.page == "page"

    options = browser.contexts[0].options
    assert options["viewport"] == {"width": 375, "height": 667}
    assert options["user_agent"] == "agent/1.0"
    assert "--no-sandbox" in factory._playwright.chromium.launched_with["args"]
    assert browser.closed


@pytest.mark.asyncio
async def test_chromium_flags_are_not_passed_to_other_engines():
    factory = _factory(FakeBrowser())

    async with factory.open(BrowserType.FIREFOX, Viewport(width=1920, height=1080), "agent"):
        pass

    assert factory._playwright.firefox.launched_with["args"] == []


@pytest.mark.asyncio
async def test_remote_browser_endpoint():
    factory = _factory(FakeBrowser(), ws_endpoint="ws://browsers:3000/")

    async with factory.open(BrowserType.WEBKIT, Viewport(width=768, height=1024), "agent"):
        pass

    assert factory._playwright.webkit.connected_to == "ws://browsers:3000/"
    assert factory._playwright.webkit.launched_with is None


@pytest.mark.asyncio
async def test_close_errors_do_not_escape():
    browser = FakeBrowser(close_error=RuntimeError("already gone"))

    async with _factory(browser).open(BrowserType.CHROMIUM, Viewport(width=1920, height=1080), "agent"):
        pass

    assert browser.closed


@pytest.mark.asyncio
async def test_open_requires_started_driver():
    factory = BrowserSessionFactory()

    with pytest.raises(RuntimeError):
        async with factory.open(BrowserType.CHROMIUM, Viewport(width=1920, height=1080), "agent"):
            pass


class FakeExchange:
    def __init__(self):
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((message, routing_key))


class FakeChannel:
    def __init__(self):
        self.default_exchange = FakeExchange()
        self.declared = []

    async def declare_queue(self, name, durable=False):
        self.declared.append((name, durable))
        return name


@pytest.mark.asyncio
async def test_publish_job_is_persistent_and_keyed_by_job():
    client = RabbitMQClient("amqp://unused/")
    client._channel = FakeChannel()

    await client.publish_job("job_1")
    await client.publish_job("job_2")

    assert client._channel.declared == [(QUEUE_TEST_JOBS, True)]
    message, routing_key = client._channel.default_exchange.published[0]
    assert routing_key == QUEUE_TEST_JOBS
    assert message.message_id == "job_1"
    assert message.delivery_mode == DeliveryMode.PERSISTENT
    assert RabbitMQClient.parse_job(message).job_id == "job_1"


@pytest.mark.asyncio
async def test_publish_requires_connection():
    with pytest.raises(RuntimeError, match="Not connected"):
        await RabbitMQClient("amqp://unused/").publish_job("job_1")


def test_log_records_carry_the_current_job():
    record = logging.LogRecord("runner", logging.INFO, __file__, 1, "step done", None, None)
    job_filter = _JobContextFilter()

    with job_context("job_1"):
        job_filter.filter(record)
    assert record.job == " [job_1]"

    job_filter.filter(record)
    assert record.job == ""
