"""Worker process for executing jobs."""

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ExecutionFailure, StoreError
from .log import get_logger, setup_logging
from .models import CompletionFields, DeadFields, Job, JobState
from .settings import Settings, get_settings
from .storage import Storage
from .utils import utcnow

logger = get_logger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127


class WorkerState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    EXECUTING = "executing"
    COMPLETING = "completing"
    RETRYING = "retrying"
    ESCALATING = "escalating"
    STOPPED = "stopped"


@dataclass
class ExecutionResult:
    """Captured output of a successful command."""

    stdout: str
    stderr: str
    exit_code: int = 0


def run_command(command: str, timeout: float) -> ExecutionResult:
    """Run ``command`` through the shell, raising ExecutionFailure on any failure.

    The command gets its own session so a timeout kills the whole process
    group, not just the shell.
    """
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as e:
        raise ExecutionFailure(f"Failed to start command: {e}", SPAWN_FAILURE_EXIT_CODE) from e

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()
        raise ExecutionFailure(f"Command timed out after {timeout:g}s", TIMEOUT_EXIT_CODE)

    if proc.returncode != 0:
        message = f"Command failed with exit code {proc.returncode}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        raise ExecutionFailure(message, proc.returncode)
    return ExecutionResult(stdout.strip(), stderr.strip(), proc.returncode)


class Worker:
    """Executes jobs from the queue.

    The loop claims one job at a time and records its outcome before looking
    at the stop flag again, so ``stop()`` never abandons a running job.
    """

    def __init__(self, storage: Storage, worker_id: str = "worker-1",
                 settings: Optional[Settings] = None,
                 stop_event: Optional[threading.Event] = None):
        self.storage = storage
        self.worker_id = worker_id
        self.settings = settings or storage.settings or get_settings()
        self._stop = stop_event or threading.Event()
        self.state = WorkerState.IDLE
        self.current_job: Optional[Job] = None
        self.log = logger.bind(worker_id=worker_id)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the in-flight job (if any) is recorded."""
        if self.current_job is not None:
            self.log.info("stop requested, finishing current job", job_id=self.current_job.id)
        else:
            self.log.info("stop requested")
        self._stop.set()

    def run(self) -> None:
        """Recover abandoned jobs once, then process jobs until stopped."""
        self.log.info("worker started")
        try:
            self.storage.recover_stuck_jobs(self.settings.stuck_job_timeout_seconds)
        except StoreError as e:
            self.log.error("stuck job recovery failed", error=str(e))

        while not self._stop.is_set():
            try:
                processed = self.run_once()
            except StoreError as e:
                self.log.error("store error in worker loop", error=str(e))
                self.state = WorkerState.IDLE
                self._stop.wait(self.settings.poll_interval_seconds)
                continue
            if not processed:
                # Returns early when stop() is called
                self._stop.wait(self.settings.poll_interval_seconds)

        self.state = WorkerState.STOPPED
        self.log.info("worker stopped")

    def run_once(self) -> bool:
        """Claim and execute a single job. Returns False if the queue had none."""
        self.state = WorkerState.CLAIMING
        job = self.storage.claim(self.worker_id)
        if job is None:
            self.state = WorkerState.IDLE
            return False
        self.execute(job)
        return True

    def execute(self, job: Job) -> Job:
        """Run a claimed job and apply the outcome. Returns the updated job."""
        self.current_job = job
        self.state = WorkerState.EXECUTING
        self.log.info("executing job", job_id=job.id, command=job.command, attempts=job.attempts)
        try:
            try:
                result = run_command(job.command, self.settings.job_timeout_seconds)
            except ExecutionFailure as failure:
                return self._handle_failure(job, failure)
            return self._handle_success(job, result)
        finally:
            self.current_job = None
            self.state = WorkerState.IDLE

    def _handle_success(self, job: Job, result: ExecutionResult) -> Job:
        self.state = WorkerState.COMPLETING
        updated = self.storage.update_state(
            job.id,
            JobState.COMPLETED,
            CompletionFields(
                exit_code=result.exit_code,
                output=result.stdout,
                error=result.stderr,
                completed_at=utcnow(),
            ),
        )
        self.log.info("job completed", job_id=job.id)
        return updated

    def _handle_failure(self, job: Job, failure: ExecutionFailure) -> Job:
        attempts = job.attempts + 1
        message = str(failure)

        if attempts <= job.max_retries:
            self.state = WorkerState.RETRYING
            delay = self.storage.schedule_retry(job.id, attempts, message)
            self.log.warning(
                "job failed, retry scheduled",
                job_id=job.id, attempts=attempts, delay=delay, exit_code=failure.exit_code,
            )
            return self.storage.get_job(job.id)

        self.state = WorkerState.ESCALATING
        updated = self.storage.update_state(
            job.id,
            JobState.DEAD,
            DeadFields(
                exit_code=failure.exit_code,
                error=message,
                last_error=message,
                attempts=attempts,
            ),
        )
        self.log.error(
            "job moved to dead letter queue",
            job_id=job.id, attempts=attempts, exit_code=failure.exit_code, error=message,
        )
        return updated


def run_worker_process(worker_id: str, db_path: str, settings: Optional[Settings] = None) -> None:
    """Entry point of a worker child process.

    SIGINT and SIGTERM request a graceful stop.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    with Storage(db_path, settings=settings) as storage:
        worker = Worker(storage, worker_id, settings=settings)

        def _handle_shutdown(signum, frame):
            worker.stop()

        signal.signal(signal.SIGTERM, _handle_shutdown)
        signal.signal(signal.SIGINT, _handle_shutdown)
        worker.run()
