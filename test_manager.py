"""Tests for the worker process supervisor. These spawn real processes."""

import json
import signal
import threading
import time

import pytest

from jobctl.manager import WORKER_PIDS_KEY, WorkerManager, live_worker_count
from jobctl.models import JobState
from jobctl.storage import Storage
from jobctl.worker import TIMEOUT_EXIT_CODE


def wait_for(predicate, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


@pytest.fixture
def manager(settings):
    mgr = WorkerManager(settings=settings)
    yield mgr
    mgr.stop_workers()


def test_workers_drain_queue_and_stop_gracefully(queue, storage, manager):
    for i in range(4):
        queue.enqueue({"id": f"job{i}", "command": f"echo {i}"})

    handles = manager.start_workers(2)

    assert [h.id for h in handles] == ["worker-1", "worker-2"]
    assert all(h.pid for h in handles)
    assert manager.active_count() == 2
    assert live_worker_count(storage) == 2
    assert wait_for(lambda: storage.get_stats()["completed"] == 4)

    manager.stop_workers()

    assert manager.workers == []
    assert [h.process.exitcode for h in handles] == [0, 0]
    assert json.loads(storage.get_config(WORKER_PIDS_KEY)) == []
    assert live_worker_count(storage) == 0


def test_start_workers_rejects_zero(manager):
    with pytest.raises(ValueError):
        manager.start_workers(0)


def test_reap_drops_crashed_worker(storage, manager):
    handle = manager.start_workers(1)[0]
    handle.process.kill()
    handle.process.join(timeout=5)

    exited = manager.reap()

    assert exited == [handle]
    assert manager.workers == []
    assert handle.process.exitcode == -signal.SIGKILL
    assert manager.active_count() == 0


def test_stop_force_kills_after_grace_period(queue, storage, settings, manager):
    settings.shutdown_grace_seconds = 0.5
    queue.enqueue({"id": "long", "command": "sleep 3"})
    handle = manager.start_workers(1)[0]
    assert wait_for(lambda: storage.get_job("long").state == JobState.PROCESSING)

    started = time.monotonic()
    manager.stop_workers()

    assert time.monotonic() - started < 3
    assert handle.process.exitcode == -signal.SIGKILL
    # Abandoned mid-run; left for stuck-job recovery
    assert storage.get_job("long").state == JobState.PROCESSING


def test_supervise_stops_pool_on_shutdown_request(queue, storage, settings, manager):
    queue.enqueue({"id": "job1", "command": "echo hi"})
    manager.start_workers(1)

    def shutdown_when_done():
        try:
            with Storage(settings.db_path, settings=settings) as own_storage:
                wait_for(lambda: own_storage.get_stats()["completed"] == 1)
        finally:
            manager.request_shutdown()

    threading.Thread(target=shutdown_when_done, daemon=True).start()
    manager.supervise()

    assert manager.workers == []
    assert storage.get_job("job1").state == JobState.COMPLETED


def test_workers_use_supervisor_settings(queue, storage, settings, manager):
    settings.job_timeout_seconds = 0.5
    queue.enqueue({"id": "slow", "command": "sleep 3", "max_retries": 0})
    manager.start_workers(1)

    assert wait_for(lambda: storage.get_job("slow").state == JobState.DEAD)
    job = storage.get_job("slow")
    assert job.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out after 0.5s" in job.error


def test_worker_info(manager):
    manager.start_workers(1)
    info = manager.worker_info()

    assert len(info) == 1
    assert info[0]["id"] == "worker-1"
    assert info[0]["alive"] is True
    assert manager.status().active_workers == 1
