"""Supervisor for a pool of worker processes."""

import json
import multiprocessing
import os
import signal
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from .log import get_logger
from .models import QueueStatus
from .queue import JobQueue
from .settings import Settings, get_settings
from .storage import Storage
from .worker import run_worker_process

logger = get_logger(__name__)

WORKER_PIDS_KEY = "worker_pids"
SUPERVISE_INTERVAL_SECONDS = 0.5


@dataclass
class WorkerHandle:
    id: str
    process: multiprocessing.Process
    pid: Optional[int]


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def live_worker_count(storage: Storage) -> int:
    """Count published worker pids that are still running on this host."""
    raw = storage.get_config(WORKER_PIDS_KEY)
    if not raw:
        return 0
    try:
        pids = json.loads(raw)
    except ValueError:
        logger.warning("ignoring malformed worker pid list", value=raw)
        return 0
    return sum(1 for pid in pids if isinstance(pid, int) and _pid_alive(pid))


class WorkerManager:
    """Spawns worker processes, tracks their liveness and shuts them down.

    The manager never touches job state; workers coordinate only through the
    store.
    """

    def __init__(self, settings: Optional[Settings] = None, db_path: Optional[str] = None):
        self.settings = settings or get_settings()
        self.db_path = db_path or self.settings.db_path
        self.storage = Storage(self.db_path, settings=self.settings)
        self.workers: List[WorkerHandle] = []
        self._next_id = 1
        self._shutdown = threading.Event()
        self._stopped = False

    # ---------- Lifecycle ----------

    def start_workers(self, count: int = 1) -> List[WorkerHandle]:
        """Spawn ``count`` worker processes against the shared store."""
        if count < 1:
            raise ValueError("count must be at least 1")
        started = []
        for _ in range(count):
            started.append(self._start_worker(f"worker-{self._next_id}"))
            self._next_id += 1
        self._publish_pids()
        logger.info("workers started", count=count)
        return started

    def _start_worker(self, worker_id: str) -> WorkerHandle:
        process = multiprocessing.Process(
            target=run_worker_process,
            args=(worker_id, str(self.db_path), self.settings),
            name=worker_id,
        )
        process.start()
        handle = WorkerHandle(id=worker_id, process=process, pid=process.pid)
        self.workers.append(handle)
        logger.info("worker process started", worker_id=worker_id, pid=process.pid)
        return handle

    def reap(self) -> List[WorkerHandle]:
        """Drop workers whose process has exited. Exited workers are not restarted."""
        exited = [w for w in self.workers if not w.process.is_alive()]
        if not exited:
            return []
        for handle in exited:
            handle.process.join()
            logger.warning(
                "worker exited", worker_id=handle.id, pid=handle.pid, exit_code=handle.process.exitcode
            )
        self.workers = [w for w in self.workers if w not in exited]
        self._publish_pids()
        return exited

    def request_shutdown(self) -> None:
        """Ask ``supervise()`` to stop the pool. Safe to call from a signal handler."""
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to a graceful shutdown."""
        def _handler(signum, frame):
            self.request_shutdown()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def supervise(self) -> None:
        """Block until shutdown is requested or every worker has exited, then stop the pool."""
        try:
            while self.workers and not self._shutdown.is_set():
                self.reap()
                self._shutdown.wait(SUPERVISE_INTERVAL_SECONDS)
        finally:
            self.stop_workers()

    def stop_workers(self) -> None:
        """SIGTERM every worker, wait out the grace period, then SIGKILL stragglers."""
        if self._stopped:
            return
        self._stopped = True

        for handle in self.workers:
            if handle.process.is_alive():
                logger.info("stopping worker", worker_id=handle.id, pid=handle.pid)
                handle.process.terminate()

        deadline = time.monotonic() + self.settings.shutdown_grace_seconds
        for handle in self.workers:
            handle.process.join(timeout=max(0.0, deadline - time.monotonic()))

        for handle in self.workers:
            if handle.process.is_alive():
                logger.warning("force stopping worker", worker_id=handle.id, pid=handle.pid)
                handle.process.kill()
                handle.process.join()

        for handle in self.workers:
            logger.info(
                "worker stopped", worker_id=handle.id, pid=handle.pid, exit_code=handle.process.exitcode
            )
        self.workers = []
        self._publish_pids()
        logger.info("all workers stopped", stats=self.storage.get_stats())
        self.storage.close()

    # ---------- Introspection ----------

    def active_count(self) -> int:
        return sum(1 for w in self.workers if w.process.is_alive())

    def worker_info(self) -> List[Dict[str, object]]:
        return [
            {"id": w.id, "pid": w.pid, "alive": w.process.is_alive()}
            for w in self.workers
        ]

    def status(self) -> QueueStatus:
        return JobQueue(self.storage, active_workers=self.active_count, settings=self.settings).get_status()

    def _publish_pids(self) -> None:
        self.storage.set_config(WORKER_PIDS_KEY, json.dumps([w.pid for w in self.workers]))
