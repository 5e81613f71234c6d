"""Data models for jobs, state updates and configuration."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    """Job lifecycle states.

    pending -> processing (claim)
    processing -> completed (success)
    processing -> pending (retry scheduled, or stuck-job recovery)
    processing -> dead (retries exhausted)
    dead -> pending (operator retry)

    FAILED is reserved: it is reported in stats but never written.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class Job(BaseModel):
    """A persisted job row."""
    id: str
    command: str
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_retries: int = 3
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error: Optional[str] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None
    completed_at: Optional[datetime] = None


class EnqueueRequest(BaseModel):
    """Input accepted by JobQueue.enqueue."""
    model_config = ConfigDict(extra="ignore")

    command: str = ""
    id: Optional[str] = None
    max_retries: Optional[int] = Field(default=None, ge=0)


class CompletionFields(BaseModel):
    """Fields written when a job finishes successfully."""
    exit_code: int = 0
    output: str = ""
    error: str = ""
    completed_at: datetime


class DeadFields(BaseModel):
    """Fields written when a job is escalated to the dead letter queue."""
    exit_code: Optional[int] = None
    error: str
    last_error: str
    attempts: int


class ErrorGroup(BaseModel):
    message: str
    count: int


class DeadStats(BaseModel):
    """Summary of the dead letter queue."""
    total: int = 0
    top_errors: List[ErrorGroup] = Field(default_factory=list)
    oldest_dead_at: Optional[datetime] = None


class QueueStatus(BaseModel):
    stats: dict
    active_workers: int = 0


class ConfigEntry(BaseModel):
    """Key/value setting persisted in the store."""
    key: str
    value: str
    updated_at: Optional[datetime] = None
