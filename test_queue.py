"""Tests for JobQueue validation, status and DLQ administration."""

import pytest

from jobctl.errors import InvalidStateError, NotFoundError, ValidationError
from jobctl.models import DeadFields, EnqueueRequest, JobState
from jobctl.queue import JobQueue


def kill(queue, job_id, error="boom"):
    queue.storage.update_state(
        job_id, JobState.DEAD, DeadFields(exit_code=1, error=error, last_error=error, attempts=4)
    )


def test_enqueue_roundtrip(queue):
    job = queue.enqueue({"command": "echo hi"})

    stored = queue.get(job.id)
    assert stored.command == "echo hi"
    assert stored.state == JobState.PENDING
    assert stored.attempts == 0
    assert stored.max_retries == 3


def test_enqueue_generates_unique_ids(queue):
    first = queue.enqueue({"command": "echo 1"})
    second = queue.enqueue({"command": "echo 2"})

    assert first.id.startswith("job_")
    assert first.id != second.id


def test_enqueue_keeps_caller_id_and_max_retries(queue):
    job = queue.enqueue(EnqueueRequest(id="nightly", command="make backup", max_retries=5))

    assert job.id == "nightly"
    assert job.max_retries == 5


@pytest.mark.parametrize("data", [{}, {"command": ""}, {"command": "   "}, {"id": "x"}])
def test_enqueue_requires_command(queue, data):
    with pytest.raises(ValidationError, match="command required"):
        queue.enqueue(data)
    assert queue.list() == []


def test_enqueue_rejects_bad_max_retries(queue):
    with pytest.raises(ValidationError):
        queue.enqueue({"command": "echo hi", "max_retries": -1})
    with pytest.raises(ValidationError):
        queue.enqueue({"command": "echo hi", "max_retries": "lots"})


def test_enqueue_duplicate_id(queue):
    queue.enqueue({"id": "job1", "command": "echo 1"})
    with pytest.raises(ValidationError, match="already exists"):
        queue.enqueue({"id": "job1", "command": "echo 2"})


def test_default_max_retries_from_settings(storage, settings):
    settings.default_max_retries = 7
    job = JobQueue(storage, settings=settings).enqueue({"command": "echo hi"})
    assert job.max_retries == 7


def test_get_unknown_job(queue):
    with pytest.raises(NotFoundError):
        queue.get("missing")


def test_list_by_state(queue):
    queue.enqueue({"id": "a", "command": "echo a"})
    queue.enqueue({"id": "b", "command": "echo b"})
    kill(queue, "a")

    assert [j.id for j in queue.list()] == ["b", "a"]
    assert [j.id for j in queue.list(JobState.DEAD)] == ["a"]
    assert queue.list(JobState.COMPLETED) == []


def test_status_includes_active_workers(storage, settings):
    queue = JobQueue(storage, active_workers=lambda: 3, settings=settings)
    queue.enqueue({"command": "echo hi"})

    status = queue.get_status()

    assert status.active_workers == 3
    assert status.stats == {"pending": 1, "processing": 0, "completed": 0, "failed": 0, "dead": 0}


def test_status_without_worker_counter(queue):
    assert queue.get_status().active_workers == 0


def test_retry_from_dlq(queue):
    queue.enqueue({"id": "job1", "command": "false", "max_retries": 1})
    kill(queue, "job1")

    job = queue.retry_from_dlq("job1")

    assert job.state == JobState.PENDING
    assert job.attempts == 0
    assert job.retry_at is None
    assert job.claimed_by is None
    assert job.last_error == "boom"


def test_retry_from_dlq_wrong_state(queue):
    queue.enqueue({"id": "job1", "command": "echo hi"})

    with pytest.raises(InvalidStateError, match="current state: pending"):
        queue.retry_from_dlq("job1")
    # Wrong-state errors are a kind of not-found error
    with pytest.raises(NotFoundError):
        queue.retry_from_dlq("job1")


def test_retry_from_dlq_twice(queue):
    queue.enqueue({"id": "job1", "command": "false"})
    kill(queue, "job1")
    queue.retry_from_dlq("job1")

    with pytest.raises(NotFoundError):
        queue.retry_from_dlq("job1")


def test_retry_from_dlq_unknown(queue):
    with pytest.raises(NotFoundError):
        queue.retry_from_dlq("missing")


def test_dlq_administration(queue):
    for name in ("a", "b", "c"):
        queue.enqueue({"id": name, "command": "false"})
        kill(queue, name, error="Command failed with exit code 1: nope")

    assert {j.id for j in queue.list_dead()} == {"a", "b", "c"}
    assert queue.inspect_dead("a").last_error.startswith("Command failed")

    stats = queue.dead_stats()
    assert stats.total == 3
    assert stats.top_errors[0].count == 3

    queue.delete_dead("a")
    assert queue.retry_all_dead() == 2
    assert queue.retry_all_dead() == 0
    assert queue.clear_dead() == 0
    assert queue.get_status().stats["pending"] == 2
