from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from sitefleet.core.types import ARTICLE_STAGE_CHAIN, JobStatus, JobType, next_article_stage
from sitefleet.services.errors import RepositoryValidationError
from sitefleet.services.records import ArticleRecord, JobCreate, JobRecord

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
PURGEABLE_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
LEASE_EXHAUSTED_MESSAGE = "lease expired after final attempt"


@dataclass(slots=True)
class QueueSloThresholds:
    pending_age_seconds: int
    error_rate_pct: float
    worker_idle_seconds: int
    pending_backlog: int


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


def retry_message(*, attempt: int, max_attempts: int, error: str) -> str:
    return f"Retry {attempt}/{max_attempts}: {error}"


def parse_job_types(value: str | Iterable[str] | None) -> list[JobType] | None:
    """Parse a comma-separated (or iterable) job type filter; empty means all types."""
    if value is None:
        return None
    if isinstance(value, str):
        chunks = [chunk.strip() for chunk in value.split(",")]
    else:
        chunks = [str(chunk).strip() for chunk in value]
    parsed: list[JobType] = []
    for chunk in chunks:
        if not chunk:
            continue
        try:
            job_type = JobType(chunk)
        except ValueError as exc:
            raise RepositoryValidationError(f"unknown job type: {chunk}") from exc
        if job_type not in parsed:
            parsed.append(job_type)
    return parsed or None


def is_claimable(job: JobRecord, *, now: datetime, job_types: Iterable[JobType] | None = None) -> bool:
    if job_types is not None and job.job_type not in set(job_types):
        return False
    lease_free = job.locked_until is None or job.locked_until <= now
    if job.status == JobStatus.PENDING:
        return (job.scheduled_for is None or job.scheduled_for <= now) and lease_free
    if job.status == JobStatus.PROCESSING:
        # A crashed worker's claim is recovered once the lease lapses.
        return job.locked_until is not None and lease_free and job.attempts < job.max_attempts
    return False


def claim_sort_key(job: JobRecord) -> tuple[Any, ...]:
    scheduled = job.scheduled_for or job.created_at
    return (-job.priority, scheduled, job.created_at, job.seq)


def is_lease_exhausted(job: JobRecord, *, now: datetime) -> bool:
    return (
        job.status == JobStatus.PROCESSING
        and job.locked_until is not None
        and job.locked_until <= now
        and job.attempts >= job.max_attempts
    )


def lease_deadline(now: datetime, lease_seconds: int) -> datetime:
    if lease_seconds <= 0:
        raise RepositoryValidationError("lease_seconds must be positive")
    return now + timedelta(seconds=lease_seconds)


def build_queue_slo_alerts(
    *,
    oldest_pending_age_seconds: float | None,
    error_rate_pct: float,
    pending_count: int,
    seconds_since_last_claim: float | None,
    thresholds: QueueSloThresholds,
) -> list[dict[str, Any]]:
    """Return alert dicts for every SLO the queue currently breaches.

    Severity escalates to ``critical`` once the observed value is more than twice
    the threshold. ``worker_idle`` only fires while there is pending work.
    """
    alerts: list[dict[str, Any]] = []

    def _alert(code: str, value: float, threshold: float, message: str) -> None:
        severity = "critical" if value > threshold * 2 else "warning"
        alerts.append(
            {
                "code": code,
                "severity": severity,
                "value": round(value, 2),
                "threshold": threshold,
                "message": message,
            }
        )

    if oldest_pending_age_seconds is not None and oldest_pending_age_seconds > thresholds.pending_age_seconds:
        _alert(
            "pending_age",
            oldest_pending_age_seconds,
            thresholds.pending_age_seconds,
            f"oldest pending job has waited {int(oldest_pending_age_seconds)}s",
        )
    if error_rate_pct > thresholds.error_rate_pct:
        _alert(
            "error_rate",
            error_rate_pct,
            thresholds.error_rate_pct,
            f"24h job error rate is {error_rate_pct:.1f}%",
        )
    if pending_count > thresholds.pending_backlog:
        _alert(
            "pending_backlog",
            pending_count,
            thresholds.pending_backlog,
            f"{pending_count} jobs pending",
        )
    if (
        pending_count > 0
        and seconds_since_last_claim is not None
        and seconds_since_last_claim > thresholds.worker_idle_seconds
    ):
        _alert(
            "worker_idle",
            seconds_since_last_claim,
            thresholds.worker_idle_seconds,
            f"no job claimed for {int(seconds_since_last_claim)}s while work is pending",
        )
    return alerts


def compute_error_rate_pct(*, failed: int, completed: int) -> float:
    finished = failed + completed
    if finished == 0:
        return 0.0
    return round(failed * 100.0 / finished, 2)


def article_stage_job(
    article: ArticleRecord,
    job_type: JobType,
    *,
    priority: int = 0,
    options: dict[str, Any] | None = None,
) -> JobCreate:
    """Build the job for one article stage; the payload carries everything the handler needs."""
    payload: dict[str, Any] = {
        "site_id": article.site_id,
        "article_id": article.id,
        "title": article.title,
        "target_keyword": article.target_keyword,
        "content_type": article.content_type.value,
        "risk_level": article.risk_level.value,
    }
    if options:
        payload["options"] = dict(options)
    return JobCreate(
        job_type=job_type,
        site_id=article.site_id,
        article_id=article.id,
        payload=payload,
        priority=priority,
    )


def check_job_create(data: JobCreate, *, max_attempts: int) -> None:
    """Reject jobs that would write to a different article than the one they were generated for."""
    if max_attempts < 1:
        raise RepositoryValidationError("max_attempts must be at least 1")
    payload_article_id = data.payload.get("article_id") if isinstance(data.payload, dict) else None
    if payload_article_id is None:
        return
    job_type = JobType(data.job_type)
    if data.article_id is None:
        if job_type in ARTICLE_STAGE_CHAIN or job_type == JobType.CONTENT_REFRESH:
            raise RepositoryValidationError(f"{job_type.value} jobs must set article_id")
        return
    if payload_article_id != data.article_id:
        raise RepositoryValidationError("article_id does not match payload.article_id")


def stage_continuation(job: JobRecord) -> tuple[JobCreate | None, bool]:
    """Next stage to enqueue when an article stage completes, and whether the chain is finished."""
    if job.job_type not in ARTICLE_STAGE_CHAIN or not job.article_id:
        return None, False
    next_stage = next_article_stage(job.job_type)
    if next_stage is None:
        return None, True
    return (
        JobCreate(
            job_type=next_stage,
            site_id=job.site_id,
            article_id=job.article_id,
            keyword_id=job.keyword_id,
            payload=dict(job.payload),
            priority=job.priority,
        ),
        False,
    )
