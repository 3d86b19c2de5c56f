from __future__ import annotations

from typing import Any

from sitefleet.core.types import BatchItemOutcome
from sitefleet.schemas.payloads import JobPayload
from sitefleet.services.collaborators import CollaboratorClient
from sitefleet.services.errors import CollaboratorError
from sitefleet.services.pipeline import StageResult
from sitefleet.services.records import JobRecord


async def execute_site_task(
    job: JobRecord,
    payload: JobPayload,
    *,
    client: CollaboratorClient,
) -> StageResult:
    """Run a site or global maintenance task on the external task runner.

    The runner answers with a batch item outcome. ``failed`` becomes a
    retryable job failure; ``skipped`` completes the job with its reason.
    """
    response = await client.execute(job.job_type, payload.model_dump(mode="json"))
    try:
        outcome = BatchItemOutcome(response.get("outcome", BatchItemOutcome.SUCCESS.value))
    except ValueError as exc:
        raise CollaboratorError(f"task runner returned unknown outcome: {response.get('outcome')!r}") from exc

    reason = response.get("reason") if isinstance(response.get("reason"), str) else None
    if outcome == BatchItemOutcome.FAILED:
        raise CollaboratorError(reason or f"{job.job_type.value} task failed")

    raw_details = response.get("result")
    result: dict[str, Any] = dict(raw_details) if isinstance(raw_details, dict) else {}
    result["outcome"] = outcome.value
    if reason:
        result["reason"] = reason
    return StageResult(result=result)
