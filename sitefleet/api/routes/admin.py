from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import Response

from sitefleet.api.errors import forbidden, http_error
from sitefleet.api.idempotency import IDEMPOTENCY_HEADER, run_idempotent
from sitefleet.core.config import Settings, get_settings
from sitefleet.core.security import get_human_principal
from sitefleet.core.types import JobStatus, JobType
from sitefleet.schemas.admin import ApprovalPolicyOut, ApprovalPolicyUpsertRequest, ResolvedPolicyOut
from sitefleet.schemas.jobs import EnqueueJobRequest, JobOut, JobsMaintenanceOut, QueueHealthOut
from sitefleet.schemas.payloads import PAYLOAD_MODELS
from sitefleet.schemas.qa import QaTemplateOut, QaTemplateUpsertRequest
from sitefleet.services.errors import RepositoryError
from sitefleet.services.records import JobCreate
from sitefleet.services.repository import get_repository

router = APIRouter()


def _require_admin(principal) -> None:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc


@router.get("/jobs", response_model=list[JobOut])
async def list_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    job_type: JobType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    _require_admin(principal)

    try:
        jobs = await repository.list_jobs(status=job_status, job_type=job_type, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [JobOut.model_validate(job) for job in jobs]


@router.post("/jobs", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    payload: EnqueueJobRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    _require_admin(principal)

    try:
        PAYLOAD_MODELS[payload.job_type].model_validate(payload.payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail={"error": f"invalid {payload.job_type.value} payload", "errors": exc.errors(include_url=False)},
        ) from exc

    async def action() -> tuple[int, object]:
        try:
            job = await repository.enqueue_job(JobCreate(**payload.model_dump()))
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_201_CREATED, JobOut.model_validate(job)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/jobs/{job_id}/cancel", response_model=JobOut)
async def cancel_job(
    job_id: str,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    _require_admin(principal)

    async def action() -> tuple[int, object]:
        try:
            job = await repository.cancel_job(job_id)
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, JobOut.model_validate(job)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/jobs/retry-failed", response_model=JobsMaintenanceOut)
async def retry_failed_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> JobsMaintenanceOut:
    _require_admin(principal)

    try:
        count = await repository.retry_failed_jobs(limit=limit)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobsMaintenanceOut(count=count)


@router.post("/jobs/purge", response_model=JobsMaintenanceOut)
async def purge_old_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    older_than_days: int | None = Query(default=None, ge=0, le=3650),
) -> JobsMaintenanceOut:
    _require_admin(principal)

    days = older_than_days if older_than_days is not None else settings.job_purge_after_days
    try:
        count = await repository.purge_old_jobs(older_than_days=days)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobsMaintenanceOut(count=count)


@router.post("/jobs/expire-leases", response_model=JobsMaintenanceOut)
async def expire_exhausted_leases(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> JobsMaintenanceOut:
    _require_admin(principal)

    try:
        count = await repository.expire_exhausted_leases(limit=limit)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobsMaintenanceOut(count=count)


@router.get("/queue/health", response_model=QueueHealthOut)
async def queue_health(principal=Depends(get_human_principal), repository=Depends(get_repository)) -> QueueHealthOut:
    _require_admin(principal)

    try:
        health = await repository.queue_health()
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return QueueHealthOut(**health)


@router.get("/approval-policies", response_model=list[ApprovalPolicyOut])
async def list_approval_policies(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[ApprovalPolicyOut]:
    _require_admin(principal)

    try:
        policies = await repository.list_approval_policies()
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [ApprovalPolicyOut.model_validate(policy) for policy in policies]


@router.put("/approval-policies", response_model=ApprovalPolicyOut)
async def upsert_approval_policy(
    payload: ApprovalPolicyUpsertRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    _require_admin(principal)

    async def action() -> tuple[int, object]:
        try:
            policy = await repository.upsert_approval_policy(**payload.model_dump())
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, ApprovalPolicyOut.model_validate(policy)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.get("/articles/{article_id}/policy", response_model=ResolvedPolicyOut)
async def resolve_article_policy(
    article_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ResolvedPolicyOut:
    _require_admin(principal)

    try:
        policy = await repository.resolve_article_policy(article_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ResolvedPolicyOut(**policy.as_dict())


@router.get("/qa-templates", response_model=list[QaTemplateOut])
async def list_qa_templates(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[QaTemplateOut]:
    _require_admin(principal)

    try:
        templates = await repository.list_qa_templates()
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [QaTemplateOut.model_validate(template) for template in templates]


@router.put("/qa-templates/{template_id}", response_model=QaTemplateOut)
async def upsert_qa_template(
    template_id: str,
    payload: QaTemplateUpsertRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    _require_admin(principal)

    async def action() -> tuple[int, object]:
        try:
            template = await repository.upsert_qa_template(
                template_id,
                name=payload.name,
                items=[item.model_dump() for item in payload.items],
                content_type=payload.content_type,
                risk_level=payload.risk_level,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, QaTemplateOut.model_validate(template)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/idempotency/purge", response_model=JobsMaintenanceOut)
async def purge_idempotency_keys(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> JobsMaintenanceOut:
    _require_admin(principal)

    try:
        count = await repository.purge_expired_idempotency_keys()
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobsMaintenanceOut(count=count)
