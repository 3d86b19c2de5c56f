from fastapi import APIRouter, Depends, Header, status
from starlette.requests import Request
from starlette.responses import Response

from sitefleet.api.errors import forbidden, http_error
from sitefleet.api.idempotency import IDEMPOTENCY_HEADER, run_idempotent
from sitefleet.core.security import get_human_principal
from sitefleet.schemas.qa import ArticleChecklistOut, QaResultOut, QaSubmitRequest, QaTemplateOut
from sitefleet.services.errors import RepositoryError
from sitefleet.services.repository import get_repository

router = APIRouter()


@router.get("/{article_id}/qa", response_model=ArticleChecklistOut)
async def get_article_checklist(
    article_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ArticleChecklistOut:
    try:
        principal.require_scopes({"content:read"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    try:
        template, results = await repository.get_article_checklist(article_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ArticleChecklistOut(
        template=QaTemplateOut.model_validate(template),
        results=[QaResultOut.model_validate(result) for result in results],
    )


@router.post("/{article_id}/qa", response_model=QaResultOut, status_code=status.HTTP_201_CREATED)
async def submit_article_checklist(
    article_id: str,
    payload: QaSubmitRequest,
    request: Request,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> Response:
    try:
        principal.require_scopes({"qa:write"})
    except PermissionError as exc:
        raise forbidden(exc) from exc

    async def action() -> tuple[int, object]:
        try:
            record = await repository.submit_qa_result(
                article_id,
                reviewer=principal.as_actor(),
                results={item_id: entry.model_dump() for item_id, entry in payload.results.items()},
                template_id=payload.template_id,
                evidence={"test_run_id": payload.test_run_id, "harness_version": payload.harness_version},
            )
        except RepositoryError as exc:
            raise http_error(exc) from exc
        return status.HTTP_201_CREATED, QaResultOut.model_validate(record)

    return await run_idempotent(repository, request, idempotency_key, action)
