from fastapi import APIRouter, Depends, Header, Query, status
from starlette.requests import Request
from starlette.responses import Response

from sitefleet.api.errors import forbidden, http_error
from sitefleet.api.idempotency import IDEMPOTENCY_HEADER, run_idempotent
from sitefleet.core.security import get_machine_principal
from sitefleet.core.types import JobStatus, JobType
from sitefleet.schemas.jobs import (
    ClaimedJobOut,
    ClaimRequest,
    CompleteRequest,
    FailRequest,
    JobCompletionOut,
    JobOut,
    OutcomeRequest,
)
from sitefleet.services.errors import RepositoryError
from sitefleet.services.pipeline import apply_batch_outcome
from sitefleet.services.records import JobCompletion
from sitefleet.services.repository import get_repository

router = APIRouter()


def completion_out(completion: JobCompletion) -> JobCompletionOut:
    return JobCompletionOut(
        applied=completion.applied,
        reason=completion.reason,
        job=JobOut.model_validate(completion.job),
        follow_on_job_ids=completion.follow_on_job_ids,
        article_status=completion.article_status,
    )


@router.get("", response_model=list[JobOut])
async def list_jobs(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=JobStatus.PENDING, alias="status"),
    job_type: JobType | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        principal.require_scopes({"jobs:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        jobs = await repository.list_jobs(status=job_status, job_type=job_type, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [JobOut.model_validate(job) for job in jobs]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, principal=Depends(get_machine_principal), repository=Depends(get_repository)) -> JobOut:
    try:
        principal.require_scopes({"jobs:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        job = await repository.get_job(job_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut.model_validate(job)


@router.post("/claim", response_model=ClaimedJobOut, responses={204: {"description": "no claimable job"}})
async def claim_job(
    payload: ClaimRequest,
    request: Request,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            job = await repository.claim_next_job(
                worker_id=payload.worker_id or principal.subject,
                lease_seconds=payload.lease_seconds,
                job_types=payload.job_types,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        if job is None:
            return status.HTTP_204_NO_CONTENT, None
        return status.HTTP_200_OK, ClaimedJobOut.model_validate(job)

    response = await run_idempotent(repository, request, idempotency_key, action)
    if response.status_code == status.HTTP_204_NO_CONTENT:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return response


@router.post("/{job_id}/complete", response_model=JobCompletionOut)
async def complete_job(
    job_id: str,
    payload: CompleteRequest,
    request: Request,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            completion = await repository.complete_job(job_id, lock_token=payload.lock_token, result=payload.result)
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, completion_out(completion)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/{job_id}/fail", response_model=JobCompletionOut)
async def fail_job(
    job_id: str,
    payload: FailRequest,
    request: Request,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            completion = await repository.fail_job(
                job_id,
                lock_token=payload.lock_token,
                error=payload.error,
                permanent=payload.permanent,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, completion_out(completion)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/{job_id}/outcome", response_model=JobCompletionOut)
async def report_job_outcome(
    job_id: str,
    payload: OutcomeRequest,
    request: Request,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            completion = await apply_batch_outcome(
                repository,
                job_id,
                lock_token=payload.lock_token,
                outcome=payload.outcome,
                reason=payload.reason,
                result=payload.result,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, completion_out(completion)

    return await run_idempotent(repository, request, idempotency_key, action)
