"""Shared pytest fixtures."""

import logging

import pytest

from jobctl.queue import JobQueue
from jobctl.settings import Settings
from jobctl.storage import Storage


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def settings(db_path):
    """Settings with short timings so loops finish quickly."""
    return Settings(
        db_path=db_path,
        poll_interval_seconds=0.05,
        job_timeout_seconds=5.0,
        stuck_job_timeout_seconds=300.0,
        shutdown_grace_seconds=5.0,
    )


@pytest.fixture
def storage(settings):
    with Storage(settings.db_path, settings=settings) as store:
        yield store


@pytest.fixture
def queue(storage, settings):
    return JobQueue(storage, settings=settings)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging() replaces root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
