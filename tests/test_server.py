import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from fakes import PNG_BYTES, TRACE_BYTES
from jobs.controller import JobController
from producer.server import Server
from storage import keys

JOBS_URL = "/api/v1/jobs"

GOTO_AND_SCREENSHOT = {
    "deviceType": "desktop",
    "browserType": "chromium",
    "actions": [
        {"type": "goto", "url": "https://example.com"},
        {"type": "screenshot"},
    ],
}


def wait_for_terminal(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"{JOBS_URL}/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish in {timeout}s")


@pytest.fixture
def server(controller, monkeypatch):
    monkeypatch.delenv("AUTH_ENABLED", raising=False)
    return Server(controller=controller)


@pytest.fixture
def client(server):
    with TestClient(server.app) as client:
        yield client


def test_goto_and_screenshot(client):
    response = client.post(JOBS_URL, json=GOTO_AND_SCREENSHOT)

    assert response.status_code == 202
    created = response.json()
    assert created["status"] == "pending"
    assert created["message"] == "Test job submitted successfully"
    assert keys.is_valid_job_id(created["jobId"])

    job = wait_for_terminal(client, created["jobId"])

    assert job["status"] == "completed"
    assert job["completedAt"]
    result = job["result"]
    assert result["status"] == "success"
    assert result["statistics"]["finalUrl"] == "https://example.com"
    assert result["statistics"]["networkRequests"] == 1
    assert len(result["statistics"]["screenshots"]) == 1
    assert [step["success"] for step in result["trace"]["steps"]] == [True, True]
    assert "error" not in result
    assert job["config"]["actions"][0] == {"type": "goto", "url": "https://example.com"}

    image = client.get(result["statistics"]["screenshots"][0])
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/png"
    assert image.headers["cache-control"] == "public, max-age=3600"
    assert image.content == PNG_BYTES


def test_failing_click(client, sessions):
    sessions.missing.add("#does-not-exist")
    payload = {
        "deviceType": "mobile",
        "browserType": "chromium",
        "actions": [{"type": "click", "selector": "#does-not-exist", "timeout": 500}],
    }

    job_id = client.post(JOBS_URL, json=payload).json()["jobId"]
    job = wait_for_terminal(client, job_id)

    assert job["status"] == "failed"
    assert job["result"]["status"] == "fail"
    assert "#does-not-exist" in job["result"]["error"]["message"]
    [step] = job["result"]["trace"]["steps"]
    assert step["success"] is False
    assert step["action"] == 'click on locator("#does-not-exist")'
    assert job["config"]["actions"][0]["locator"] == {"by": "selector", "value": "#does-not-exist"}


def test_trace_download(client):
    payload = {**GOTO_AND_SCREENSHOT, "options": {"generateTrace": True}}

    job_id = client.post(JOBS_URL, json=payload).json()["jobId"]
    job = wait_for_terminal(client, job_id)

    trace = job["result"]["trace"]
    assert trace["traceFile"] == f"{JOBS_URL}/{job_id}/trace"
    assert trace["traceViewerUrl"].startswith("https://trace.playwright.dev/?trace=")

    response = client.get(trace["traceFile"])
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert response.headers["content-disposition"] == f'attachment; filename="trace-{job_id}.zip"'
    assert response.content == TRACE_BYTES


def test_missing_actions_is_rejected(client, job_store):
    response = client.post(JOBS_URL, json={"deviceType": "desktop", "browserType": "chromium"})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid request body"
    assert body["details"]
    assert asyncio.run(job_store.list_jobs()) == []


@pytest.mark.parametrize(
    "payload",
    [
        {
            "deviceType": "desktop",
            "browserType": "chromium",
            "actions": [{"type": "click", "selector": "#a", "getByText": "A"}],
        },
        {"deviceType": "watch", "browserType": "chromium", "actions": [{"type": "wait"}]},
        {"deviceType": "desktop", "browserType": "chromium", "actions": [{"type": "hover"}]},
        {
            "deviceType": "desktop",
            "browserType": "chromium",
            "actions": [{"type": "wait"}],
            "options": {"viewport": {"width": 100, "height": 100}},
        },
    ],
)
def test_invalid_configs_are_rejected(client, payload):
    response = client.post(JOBS_URL, json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request body"


def test_unknown_job_and_artifacts(client):
    job_id = keys.new_job_id()

    for path, message in (
        (f"{JOBS_URL}/{job_id}", "Job not found"),
        (f"{JOBS_URL}/{job_id}/trace", "Trace file not found"),
        (f"{JOBS_URL}/{job_id}/screenshots/missing.png", "Screenshot not found"),
    ):
        response = client.get(path)
        assert response.status_code == 404
        assert response.json() == {"error": message}


def test_overlong_ids_are_not_found(client):
    long_id = "j" * 300

    for path, message in (
        (f"{JOBS_URL}/{long_id}", "Job not found"),
        (f"{JOBS_URL}/{long_id}/trace", "Trace file not found"),
        (f"{JOBS_URL}/{keys.new_job_id()}/screenshots/{'a' * 300}.png", "Screenshot not found"),
    ):
        response = client.get(path)
        assert response.status_code == 404
        assert response.json() == {"error": message}

    assert client.delete(f"{JOBS_URL}/{long_id}").status_code == 400

def test_delete_job(client):
    job_id = client.post(JOBS_URL, json=GOTO_AND_SCREENSHOT).json()["jobId"]
    job = wait_for_terminal(client, job_id)
    screenshot = job["result"]["statistics"]["screenshots"][0]

    response = client.delete(f"{JOBS_URL}/{job_id}")

    assert response.status_code == 200
    assert response.json() == {"message": "Job deleted successfully", "jobId": job_id}
    assert client.get(f"{JOBS_URL}/{job_id}").status_code == 404
    assert client.get(screenshot).status_code == 404
    assert client.delete(f"{JOBS_URL}/{job_id}").status_code == 404


def test_delete_rejects_malformed_id(client):
    response = client.delete(f"{JOBS_URL}/not-a-job")

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid job ID"}


def test_finished_job_reads_are_stable(client):
    job_id = client.post(JOBS_URL, json=GOTO_AND_SCREENSHOT).json()["jobId"]
    wait_for_terminal(client, job_id)

    first = client.get(f"{JOBS_URL}/{job_id}")
    second = client.get(f"{JOBS_URL}/{job_id}")

    assert first.content == second.content


def test_unknown_route(client):
    response = client.get("/api/v1/nothing-here")

    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}


def test_unhandled_errors_are_json(controller, monkeypatch):
    monkeypatch.delenv("AUTH_ENABLED", raising=False)

    async def _broken(job_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(controller, "get", _broken)

    with TestClient(Server(controller=controller).app, raise_server_exceptions=False) as client:
        response = client.get(f"{JOBS_URL}/{keys.new_job_id()}")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "message": "disk on fire"}


def test_dispatch_failure_is_503(job_store, artifacts, runner, monkeypatch):
    class _DownDispatcher:
        async def dispatch(self, job_id):
            raise ConnectionError("broker down")

        async def close(self):
            pass

    monkeypatch.delenv("AUTH_ENABLED", raising=False)
    controller = JobController(job_store, artifacts, runner, _DownDispatcher())

    with TestClient(Server(controller=controller).app) as client:
        response = client.post(JOBS_URL, json=GOTO_AND_SCREENSHOT)

    assert response.status_code == 503
    assert "broker down" in response.json()["error"]


class TestAuth:
    @pytest.fixture
    def client(self, controller, monkeypatch):
        monkeypatch.setenv("AUTH_ENABLED", "true")
        with TestClient(Server(controller=controller).app) as client:
            yield client

    def test_requests_without_token_are_rejected(self, client):
        response = client.post(JOBS_URL, json=GOTO_AND_SCREENSHOT)

        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}

    def test_token_grants_access(self, client):
        response = client.post("/api/v1/auth", json={"username": "admin", "password": "admin"})
        assert response.status_code == 200
        token = response.json()["access_token"]
        client.headers["Authorization"] = f"Bearer {token}"

        created = client.post(JOBS_URL, json=GOTO_AND_SCREENSHOT)

        assert created.status_code == 202
        assert wait_for_terminal(client, created.json()["jobId"])["status"] == "completed"

    def test_bad_credentials(self, client):
        response = client.post("/api/v1/auth", json={"username": "admin", "password": "nope"})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid credentials"}

    def test_garbage_token(self, client):
        response = client.get(
            f"{JOBS_URL}/{keys.new_job_id()}",
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401
