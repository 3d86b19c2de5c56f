from fastapi import APIRouter, Depends, Header, Query, status
from starlette.requests import Request
from starlette.responses import Response

from sitefleet.api.errors import forbidden, http_error
from sitefleet.api.idempotency import IDEMPOTENCY_HEADER, run_idempotent
from sitefleet.core.security import get_human_principal
from sitefleet.core.types import JobType, ReviewAction, RevisionChangeType
from sitefleet.schemas.articles import (
    ArticleCreatedOut,
    ArticleCreateRequest,
    ArticleOut,
    ArticlePatchRequest,
    ArticleRevisionOut,
    CommentRequest,
    ExpertSignoffRequest,
    ReviewEventOut,
    ReviewReadinessOut,
    TransitionOut,
    TransitionRequest,
)
from sitefleet.services.content import slugify
from sitefleet.services.errors import RepositoryError
from sitefleet.services.records import ArticleChanges, ArticleCreate
from sitefleet.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=ArticleCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_article(
    payload: ArticleCreateRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"content:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            article, job = await repository.create_article(
                ArticleCreate(
                    site_id=payload.site_id,
                    title=payload.title,
                    slug=payload.slug or slugify(payload.title),
                    target_keyword=payload.target_keyword,
                    content_type=payload.content_type,
                    risk_level=payload.risk_level,
                ),
                actor=principal.as_actor(),
                first_stage=None if payload.first_stage == "none" else JobType(payload.first_stage),
                priority=payload.priority,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_201_CREATED, ArticleCreatedOut(
            article=ArticleOut.model_validate(article),
            job_id=job.id if job else None,
        )

    return await run_idempotent(repository, request, idempotency_key, action)


@router.get("/{article_id}", response_model=ArticleOut)
async def get_article(
    article_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ArticleOut:
    try:
        principal.require_scopes({"content:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        article = await repository.get_article(article_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ArticleOut.model_validate(article)


@router.patch("/{article_id}", response_model=ArticleOut)
async def patch_article(
    article_id: str,
    payload: ArticlePatchRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"content:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    changes = ArticleChanges(
        **payload.model_dump(exclude_none=True),
        change_type=RevisionChangeType.MANUAL_EDIT,
    )

    async def action() -> tuple[int, object]:
        try:
            article = await repository.edit_article(article_id, changes, actor=principal.as_actor())
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, ArticleOut.model_validate(article)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/{article_id}/transitions/{action_name}", response_model=TransitionOut)
async def transition_article(
    article_id: str,
    action_name: ReviewAction,
    payload: TransitionRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"content:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            result = await repository.transition_article(
                article_id,
                action_name,
                actor=principal.as_actor(),
                rationale=payload.rationale,
                details=payload.details,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_200_OK, TransitionOut(
            article=ArticleOut.model_validate(result.article),
            previous_status=result.previous_status,
            event=ReviewEventOut.model_validate(result.event),
            auto_published=result.auto_published,
            deploy_job_id=result.deploy_job_id,
        )

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/{article_id}/comments", response_model=ReviewEventOut, status_code=status.HTTP_201_CREATED)
async def add_comment(
    article_id: str,
    payload: CommentRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"content:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            event = await repository.add_comment(article_id, actor=principal.as_actor(), body=payload.body)
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_201_CREATED, ReviewEventOut.model_validate(event)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.post("/{article_id}/expert-signoff", response_model=ReviewEventOut, status_code=status.HTTP_201_CREATED)
async def expert_signoff(
    article_id: str,
    payload: ExpertSignoffRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"expert:sign"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            event = await repository.record_expert_signoff(
                article_id,
                actor=principal.as_actor(),
                rationale=payload.rationale,
                credentials=payload.credentials,
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_201_CREATED, ReviewEventOut.model_validate(event)

    return await run_idempotent(repository, request, idempotency_key, action)


@router.get("/{article_id}/events", response_model=list[ReviewEventOut])
async def list_review_events(
    article_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[ReviewEventOut]:
    try:
        principal.require_scopes({"content:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        events = await repository.list_review_events(article_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [ReviewEventOut.model_validate(event) for event in events]


@router.get("/{article_id}/revisions", response_model=list[ArticleRevisionOut])
async def list_revisions(
    article_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[ArticleRevisionOut]:
    try:
        principal.require_scopes({"content:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        revisions = await repository.list_revisions(article_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [ArticleRevisionOut.model_validate(revision) for revision in revisions]


@router.get("/{article_id}/review-readiness", response_model=ReviewReadinessOut)
async def review_readiness(
    article_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ReviewReadinessOut:
    try:
        principal.require_scopes({"content:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        readiness = await repository.review_readiness(article_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ReviewReadinessOut(**readiness)
