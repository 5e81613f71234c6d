"""Exception hierarchy for job queue operations."""

from typing import Optional


class QueueError(Exception):
    """Base class for all job queue errors."""


class ValidationError(QueueError):
    """Rejected input, e.g. an enqueue request without a command."""


class NotFoundError(QueueError):
    """Unknown job id, or a job that is not in the expected state."""


class InvalidStateError(NotFoundError):
    """Job exists but is in the wrong state for the requested operation."""


class StoreError(QueueError):
    """Persistence-layer fault."""


class ExecutionFailure(QueueError):
    """Job command exited non-zero, timed out or could not be spawned."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code
