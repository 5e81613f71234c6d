"""Persistent job storage on SQLite.

Every job mutation goes through this module. Writes run inside
``BEGIN IMMEDIATE`` transactions, which take SQLite's single write lock up
front, so the claim query (find oldest eligible job, mark it processing) is
one indivisible step across all worker processes sharing the file.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from . import backoff
from .errors import NotFoundError, StoreError, ValidationError
from .log import get_logger
from .models import (
    CompletionFields,
    ConfigEntry,
    DeadFields,
    DeadStats,
    ErrorGroup,
    Job,
    JobState,
)
from .settings import Settings, get_settings
from .utils import to_db, utcnow

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    command TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    claimed_by TEXT,
    claimed_at TEXT,
    retry_at TEXT,
    last_error TEXT,
    error TEXT,
    output TEXT,
    exit_code INTEGER,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state_created ON jobs(state, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_retry_at ON jobs(retry_at);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

StateFields = Union[CompletionFields, DeadFields]

TOP_ERRORS_LIMIT = 5


class Storage:
    """SQLite-backed job store with atomic state transitions."""

    def __init__(self, db_path: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.db_path = Path(db_path or self.settings.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode: transactions are opened explicitly in _transaction()
            self._conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
            with self._transaction() as conn:
                for statement in SCHEMA.split(";"):
                    if statement.strip():
                        conn.execute(statement)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open job store at {self.db_path}: {e}") from e

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Release the database connection."""
        self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block under the database write lock, committing on success."""
        conn = self._conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StoreError(f"Database error: {e}") from e

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Database error: {e}") from e

    @staticmethod
    def _to_job(row: sqlite3.Row) -> Job:
        return Job.model_validate(dict(row))

    # ---------- Jobs ----------

    def insert(self, job: Job) -> Job:
        """Add a new pending job. Raises ValidationError on a duplicate id."""
        now = to_db(utcnow())
        with self._transaction() as conn:
            try:
                conn.execute(
                    """INSERT INTO jobs (id, command, state, attempts, max_retries, created_at, updated_at)
                       VALUES (?, ?, ?, 0, ?, ?, ?)""",
                    (job.id, job.command, JobState.PENDING.value, job.max_retries, now, now),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Job '{job.id}' already exists") from e
        return self.get_job(job.id)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        rows = self._fetchall("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._to_job(rows[0]) if rows else None

    def list_jobs(self, state: Optional[JobState] = None, limit: Optional[int] = None) -> List[Job]:
        """Jobs newest first, optionally filtered by state."""
        sql = "SELECT * FROM jobs"
        params: list = []
        if state is not None:
            sql += " WHERE state = ?"
            params.append(JobState(state).value)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._to_job(row) for row in self._fetchall(sql, tuple(params))]

    def claim(self, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        """Atomically move the oldest eligible pending job to processing.

        Returns None when no job is eligible.
        """
        ts = to_db(now or utcnow())
        with self._transaction() as conn:
            rows = conn.execute(
                """UPDATE jobs
                   SET state = ?, claimed_by = ?, claimed_at = ?, updated_at = ?
                   WHERE id = (
                       SELECT id FROM jobs
                       WHERE state = ? AND (retry_at IS NULL OR retry_at <= ?)
                       ORDER BY created_at ASC, rowid ASC
                       LIMIT 1
                   ) AND state = ?
                   RETURNING *""",
                (
                    JobState.PROCESSING.value, worker_id, ts, ts,
                    JobState.PENDING.value, ts,
                    JobState.PENDING.value,
                ),
            ).fetchall()
        if not rows:
            return None
        job = self._to_job(rows[0])
        logger.debug("job claimed", job_id=job.id, worker_id=worker_id)
        return job

    def update_state(self, job_id: str, state: JobState, fields: Optional[StateFields] = None) -> Job:
        """Set a job's state plus one fixed set of outcome fields.

        Leaving processing clears the claim. Raises NotFoundError for an
        unknown id.
        """
        if fields is not None and not isinstance(fields, (CompletionFields, DeadFields)):
            raise TypeError(f"Unsupported state fields: {type(fields).__name__}")
        state = JobState(state)
        assignments: Dict[str, object] = {
            "state": state.value,
            "updated_at": to_db(utcnow()),
        }
        if state is not JobState.PROCESSING:
            assignments["claimed_by"] = None
            assignments["claimed_at"] = None
            assignments["retry_at"] = None
        if fields is not None:
            for column, value in fields.model_dump().items():
                assignments[column] = to_db(value) if isinstance(value, datetime) else value

        # Column names come from the model classes above, never from callers
        set_clause = ", ".join(f"{column} = ?" for column in assignments)
        with self._transaction() as conn:
            rows = conn.execute(
                f"UPDATE jobs SET {set_clause} WHERE id = ? RETURNING *",
                (*assignments.values(), job_id),
            ).fetchall()
        if not rows:
            raise NotFoundError(f"Job '{job_id}' not found")
        return self._to_job(rows[0])

    def schedule_retry(self, job_id: str, attempts: int, error_message: str,
                       now: Optional[datetime] = None) -> float:
        """Return a failed job to pending with a backoff delay.

        ``attempts`` is the attempt count after the failure being recorded,
        so it is at least 1 for a job that has run. The delay is
        ``multiplier ** attempts`` capped at ``backoff_cap_seconds``, which
        makes the first retry wait 2s with the default multiplier.

        Returns the delay in seconds.
        """
        now = now or utcnow()
        delay_seconds = backoff.delay(
            attempts,
            multiplier=self.settings.backoff_multiplier,
            cap=self.settings.backoff_cap_seconds,
        )
        retry_at = now + timedelta(seconds=delay_seconds)
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE jobs
                   SET state = ?, attempts = ?, retry_at = ?, last_error = ?, updated_at = ?,
                       claimed_by = NULL, claimed_at = NULL
                   WHERE id = ?""",
                (JobState.PENDING.value, attempts, to_db(retry_at), error_message, to_db(now), job_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Job '{job_id}' not found")
        return delay_seconds

    def recover_stuck_jobs(self, timeout: float, now: Optional[datetime] = None) -> int:
        """Return jobs held in processing longer than ``timeout`` seconds to pending.

        Attempts are left untouched.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout)
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE jobs
                   SET state = ?, claimed_by = NULL, claimed_at = NULL, updated_at = ?
                   WHERE state = ? AND claimed_at < ?""",
                (JobState.PENDING.value, to_db(now), JobState.PROCESSING.value, to_db(cutoff)),
            )
            count = cursor.rowcount
        if count:
            logger.warning("recovered stuck jobs", count=count, timeout=timeout)
        return count

    def get_stats(self) -> Dict[str, int]:
        """Job counts for every state, zero-filled."""
        stats = {state.value: 0 for state in JobState}
        rows = self._fetchall("SELECT state, COUNT(*) AS count FROM jobs GROUP BY state")
        for row in rows:
            stats[row["state"]] = row["count"]
        return stats

    # ---------- Dead Letter Queue ----------

    def list_dead(self, limit: Optional[int] = None) -> List[Job]:
        """Dead jobs, most recently failed first."""
        sql = "SELECT * FROM jobs WHERE state = ? ORDER BY updated_at DESC, rowid DESC"
        params: list = [JobState.DEAD.value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._to_job(row) for row in self._fetchall(sql, tuple(params))]

    def get_dead(self, job_id: str) -> Job:
        rows = self._fetchall(
            "SELECT * FROM jobs WHERE id = ? AND state = ?", (job_id, JobState.DEAD.value)
        )
        if not rows:
            raise NotFoundError(f"Job '{job_id}' not found in dead letter queue")
        return self._to_job(rows[0])

    def retry_dead(self, job_id: str) -> Job:
        """Move a dead job back to pending with attempts reset."""
        with self._transaction() as conn:
            rows = conn.execute(
                """UPDATE jobs
                   SET state = ?, attempts = 0, retry_at = NULL, claimed_by = NULL,
                       claimed_at = NULL, error = NULL, exit_code = NULL, updated_at = ?
                   WHERE id = ? AND state = ?
                   RETURNING *""",
                (JobState.PENDING.value, to_db(utcnow()), job_id, JobState.DEAD.value),
            ).fetchall()
        if not rows:
            raise NotFoundError(f"Job '{job_id}' not found in dead letter queue")
        logger.info("dead job requeued", job_id=job_id)
        return self._to_job(rows[0])

    def retry_all_dead(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE jobs
                   SET state = ?, attempts = 0, retry_at = NULL, claimed_by = NULL,
                       claimed_at = NULL, error = NULL, exit_code = NULL, updated_at = ?
                   WHERE state = ?""",
                (JobState.PENDING.value, to_db(utcnow()), JobState.DEAD.value),
            )
            count = cursor.rowcount
        if count:
            logger.info("dead jobs requeued", count=count)
        return count

    def delete_dead(self, job_id: str) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE id = ? AND state = ?", (job_id, JobState.DEAD.value)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Job '{job_id}' not found in dead letter queue")

    def clear_dead(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE state = ?", (JobState.DEAD.value,))
            return cursor.rowcount

    def get_dead_stats(self) -> DeadStats:
        """Total, most common errors and time of the oldest failure."""
        summary = self._fetchall(
            "SELECT COUNT(*) AS total, MIN(updated_at) AS oldest FROM jobs WHERE state = ?",
            (JobState.DEAD.value,),
        )[0]
        groups = self._fetchall(
            """SELECT last_error, COUNT(*) AS count FROM jobs
               WHERE state = ? AND last_error IS NOT NULL
               GROUP BY last_error
               ORDER BY count DESC, last_error ASC
               LIMIT ?""",
            (JobState.DEAD.value, TOP_ERRORS_LIMIT),
        )
        return DeadStats(
            total=summary["total"],
            top_errors=[ErrorGroup(message=row["last_error"], count=row["count"]) for row in groups],
            oldest_dead_at=summary["oldest"],
        )

    # ---------- Config ----------

    def get_config(self, key: str) -> Optional[str]:
        rows = self._fetchall("SELECT value FROM config WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_config(self, key: str, value: str) -> None:
        """Insert or replace a config value."""
        if not key or not key.strip():
            raise ValidationError("Config key cannot be empty")
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO config (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (key, str(value), to_db(utcnow())),
            )

    def list_config(self) -> List[ConfigEntry]:
        rows = self._fetchall("SELECT key, value, updated_at FROM config ORDER BY key")
        return [ConfigEntry.model_validate(dict(row)) for row in rows]
