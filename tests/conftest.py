"""Shared fixtures: temporary stores and the fake browser session factory."""
import os

os.environ.setdefault("LOG_DIR", "")

import pytest

from fakes import FakeSessionFactory
from jobs.controller import JobController
from jobs.models import JobConfig
from runner.engine import JobRunner
from storage.filesystem import FileKVStore
from storage.stores import ArtifactStore, JobStore


@pytest.fixture
def job_store(tmp_path):
    return JobStore(FileKVStore(tmp_path / "jobs"))


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(FileKVStore(tmp_path / "artifacts"))


@pytest.fixture
def sessions():
    return FakeSessionFactory()


@pytest.fixture
def runner(sessions, artifacts):
    return JobRunner(sessions, artifacts, public_base_url="http://testserver")


@pytest.fixture
def controller(job_store, artifacts, runner):
    return JobController(job_store, artifacts, runner)


@pytest.fixture
def make_config():
    def _make(*actions, device="desktop", browser="chromium", **options):
        return JobConfig.model_validate(
            {
                "deviceType": device,
                "browserType": browser,
                "actions": list(actions),
                "options": options,
            }
        )

    return _make
