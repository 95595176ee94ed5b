"""Job models for the durable cleanup job queue."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job state machine states."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    """Where a cleanup job came from."""

    MANUAL_CLEANUP = "manual_cleanup"
    SCHEDULED_CLEANUP = "scheduled_cleanup"
    EVENT_CLEANUP = "event_cleanup"


class CleanupRequest(BaseModel):
    """Run parameters bound to a job at trigger time."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy_id: str = Field(min_length=1)
    triggered_by: str = "user_request"
    dry_run: bool = False
    max_emails: int | None = Field(default=None, ge=1)
    batch_size: int | None = Field(default=None, ge=1)
    confirmed: bool = False
    excluded_ids: list[str] = Field(
        default_factory=list,
        description="Records already claimed by a higher-precedence policy in the same run",
    )
    requeued_from: str | None = None


class JobProgress(BaseModel):
    emails_analyzed: int = 0
    emails_cleaned: int = 0
    current_batch: int = 0
    total_batches: int = 0
    percent: float = 0.0


class JobResult(BaseModel):
    """Outcome of one policy execution."""

    execution_id: str
    policy_id: str
    success: bool
    dry_run: bool = False
    emails_processed: int = 0
    emails_deleted: int = 0
    emails_archived: int = 0
    storage_freed: int = 0
    errors: list[str] = Field(default_factory=list)
    truncated: bool = False
    batches_total: int = 0
    batches_failed: int = 0
    started_at: datetime
    completed_at: datetime


class Job(BaseModel):
    """A durable, state-tracked unit of work."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    job_type: JobType
    status: JobStatus
    request_params: CleanupRequest
    progress: JobProgress | None = None
    results: JobResult | None = None
    error_details: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def policy_id(self) -> str:
        return self.request_params.policy_id
