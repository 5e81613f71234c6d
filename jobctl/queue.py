"""Job queue management."""

from typing import Any, Callable, List, Mapping, Optional, Union

import pydantic

from .errors import InvalidStateError, NotFoundError, ValidationError
from .log import get_logger
from .models import DeadStats, EnqueueRequest, Job, JobState, QueueStatus
from .settings import Settings, get_settings
from .storage import Storage
from .utils import generate_job_id

logger = get_logger(__name__)


class JobQueue:
    """Validates and creates jobs; read and DLQ operations over the store."""

    def __init__(self, storage: Storage, active_workers: Optional[Callable[[], int]] = None,
                 settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or storage.settings or get_settings()
        self._active_workers = active_workers

    def enqueue(self, data: Union[EnqueueRequest, Mapping[str, Any]]) -> Job:
        """Create a pending job from ``{command, id?, max_retries?}``."""
        if not isinstance(data, EnqueueRequest):
            try:
                data = EnqueueRequest.model_validate(dict(data))
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid job: {e}") from e

        if not data.command or not data.command.strip():
            raise ValidationError("command required")

        max_retries = data.max_retries
        if max_retries is None:
            max_retries = self.settings.default_max_retries

        job = Job(id=data.id or generate_job_id(), command=data.command, max_retries=max_retries)
        job = self.storage.insert(job)
        logger.info("job enqueued", job_id=job.id, max_retries=job.max_retries)
        return job

    def get(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    def list(self, state: Optional[JobState] = None, limit: Optional[int] = None) -> List[Job]:
        """Jobs newest first, optionally filtered by state."""
        return self.storage.list_jobs(state=state, limit=limit)

    def get_status(self) -> QueueStatus:
        """Per-state counts plus the number of live workers."""
        active = self._active_workers() if self._active_workers is not None else 0
        return QueueStatus(stats=self.storage.get_stats(), active_workers=active)

    # ---------- Dead Letter Queue ----------

    def retry_from_dlq(self, job_id: str) -> Job:
        """Requeue a dead job with attempts reset."""
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        if job.state is not JobState.DEAD:
            raise InvalidStateError(
                f"Job '{job_id}' is not in the dead letter queue (current state: {job.state.value})"
            )
        return self.storage.retry_dead(job_id)

    def list_dead(self, limit: Optional[int] = None) -> List[Job]:
        return self.storage.list_dead(limit=limit)

    def inspect_dead(self, job_id: str) -> Job:
        return self.storage.get_dead(job_id)

    def retry_all_dead(self) -> int:
        return self.storage.retry_all_dead()

    def delete_dead(self, job_id: str) -> None:
        self.storage.delete_dead(job_id)
        logger.info("dead job deleted", job_id=job_id)

    def clear_dead(self) -> int:
        count = self.storage.clear_dead()
        logger.info("dead letter queue cleared", count=count)
        return count

    def dead_stats(self) -> DeadStats:
        return self.storage.get_dead_stats()
