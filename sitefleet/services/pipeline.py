from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ValidationError

from sitefleet.core.types import BatchItemOutcome, JobStatus, JobType
from sitefleet.schemas.payloads import PAYLOAD_MODELS
from sitefleet.services.errors import HandlerRegistryError, JobPayloadError
from sitefleet.services.records import ArticleChanges, FollowOnJob, JobCompletion, JobRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StageResult:
    result: dict[str, Any] = field(default_factory=dict)
    article_changes: ArticleChanges | None = None
    follow_on: list[FollowOnJob] = field(default_factory=list)


@dataclass(slots=True)
class PipelineOutcome:
    job_id: str
    job_type: JobType
    status: str
    completion: JobCompletion | None = None
    error: str | None = None


JobHandler = Callable[[JobRecord, BaseModel], Awaitable[StageResult]]


class PipelineDispatcher:
    """Route a claimed job to its handler and report the result back to the store.

    The handler runs without any store lock held. Follow-on jobs are handed to
    ``complete_job`` so they are written in the same transaction that completes
    the current job; the store adds the next article stage itself. The
    dispatcher never retries; errors go to ``fail_job``.
    """

    def __init__(self, store, handlers: Mapping[JobType, JobHandler]) -> None:
        missing = [job_type.value for job_type in JobType if job_type not in handlers]
        if missing:
            raise HandlerRegistryError(f"no handler registered for job types: {sorted(missing)}")
        self.store = store
        self.handlers = dict(handlers)

    async def dispatch(self, job: JobRecord) -> PipelineOutcome:
        if job.lock_token is None:
            raise HandlerRegistryError(f"job {job.id} was dispatched without a claim")

        try:
            payload = PAYLOAD_MODELS[job.job_type].model_validate(job.payload)
        except ValidationError as exc:
            return await self._fail(job, f"invalid payload: {_summarize_validation(exc)}", permanent=True)

        try:
            stage = await self.handlers[job.job_type](job, payload)
        except JobPayloadError as exc:
            return await self._fail(job, str(exc), permanent=True)
        except Exception as exc:
            logger.exception("job handler failed job_id=%s job_type=%s", job.id, job.job_type.value)
            return await self._fail(job, str(exc) or exc.__class__.__name__, permanent=False)

        completion = await self.store.complete_job(
            job.id,
            lock_token=job.lock_token,
            result=stage.result,
            article_changes=stage.article_changes,
            follow_on=stage.follow_on,
        )
        if not completion.applied:
            logger.warning("job result discarded job_id=%s reason=%s", job.id, completion.reason)
            return PipelineOutcome(
                job_id=job.id,
                job_type=job.job_type,
                status="discarded",
                completion=completion,
                error=completion.reason,
            )
        return PipelineOutcome(job_id=job.id, job_type=job.job_type, status="completed", completion=completion)

    async def _fail(self, job: JobRecord, error: str, *, permanent: bool) -> PipelineOutcome:
        completion = await self.store.fail_job(job.id, lock_token=job.lock_token, error=error, permanent=permanent)
        if not completion.applied:
            status = "discarded"
        elif completion.job.status == JobStatus.PENDING:
            status = "retrying"
        else:
            status = "failed"
        logger.info(
            "job failed job_id=%s job_type=%s permanent=%s status=%s error=%s",
            job.id,
            job.job_type.value,
            permanent,
            status,
            error,
        )
        return PipelineOutcome(job_id=job.id, job_type=job.job_type, status=status, completion=completion, error=error)


async def apply_batch_outcome(
    store,
    job_id: str,
    *,
    lock_token: str,
    outcome: BatchItemOutcome,
    reason: str | None = None,
    result: dict[str, Any] | None = None,
) -> JobCompletion:
    """Map a batch item outcome reported by external orchestration onto complete or fail."""
    if outcome == BatchItemOutcome.FAILED:
        return await store.fail_job(job_id, lock_token=lock_token, error=reason or "batch item failed")

    payload = dict(result or {})
    payload["outcome"] = outcome.value
    if reason:
        payload["reason"] = reason
    return await store.complete_job(job_id, lock_token=lock_token, result=payload)


def _summarize_validation(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(chunk) for chunk in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)
