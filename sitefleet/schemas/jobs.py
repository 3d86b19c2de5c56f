from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sitefleet.core.types import ArticleStatus, BatchItemOutcome, JobStatus, JobType


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_type: JobType
    status: JobStatus
    site_id: str | None = None
    article_id: str | None = None
    keyword_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    scheduled_for: datetime | None = None
    locked_until: datetime | None = None
    locked_by: str | None = None


class ClaimedJobOut(JobOut):
    lock_token: str


class ClaimRequest(BaseModel):
    worker_id: str | None = Field(default=None, min_length=1, max_length=200)
    lease_seconds: int = Field(default=300, ge=1, le=3600)
    job_types: list[JobType] | None = None


class CompleteRequest(BaseModel):
    lock_token: str = Field(min_length=1)
    result: dict[str, Any] | None = None


class FailRequest(BaseModel):
    lock_token: str = Field(min_length=1)
    error: str = Field(min_length=1, max_length=4000)
    permanent: bool = False


class OutcomeRequest(BaseModel):
    lock_token: str = Field(min_length=1)
    outcome: BatchItemOutcome
    reason: str | None = Field(default=None, max_length=2000)
    result: dict[str, Any] | None = None


class JobCompletionOut(BaseModel):
    applied: bool
    reason: str | None = None
    job: JobOut
    follow_on_job_ids: list[str] = Field(default_factory=list)
    article_status: ArticleStatus | None = None


class EnqueueJobRequest(BaseModel):
    job_type: JobType
    site_id: str | None = Field(default=None, min_length=1)
    article_id: str | None = None
    keyword_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, ge=-100, le=100)
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    scheduled_for: datetime | None = None


class JobsMaintenanceOut(BaseModel):
    count: int


class QueueHealthOut(BaseModel):
    stats: dict[str, int]
    oldest_pending_age_seconds: float | None = None
    avg_processing_ms: float | None = None
    throughput_per_hour: float
    error_rate_pct: float
    seconds_since_last_claim: float | None = None
    alerts: list[dict[str, Any]] = Field(default_factory=list)
    pool: dict[str, Any] | None = None
