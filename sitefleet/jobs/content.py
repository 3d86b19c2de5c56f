from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from sitefleet.core.types import JobType, RevisionChangeType
from sitefleet.schemas.payloads import ArticleStagePayload
from sitefleet.services.collaborators import CollaboratorClient
from sitefleet.services.content import word_count
from sitefleet.services.errors import CollaboratorError
from sitefleet.services.pipeline import StageResult
from sitefleet.services.records import ArticleChanges, JobRecord

# Fields each stage is allowed to write back onto the article.
STAGE_FIELDS: dict[JobType, tuple[str, ...]] = {
    JobType.RESEARCH: ("research",),
    JobType.OUTLINE: ("outline",),
    JobType.DRAFT: ("title", "body"),
    JobType.HUMANIZE: ("body",),
    JobType.SEO_OPTIMIZE: ("title", "body", "meta_description"),
    JobType.METADATA: ("title", "meta_description"),
}


class GeneratedContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    body: str | None = None
    outline: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    meta_description: str | None = None


async def execute_article_stage(
    job: JobRecord,
    payload: ArticleStagePayload,
    *,
    client: CollaboratorClient,
) -> StageResult:
    response = await client.generate(job.job_type, payload.model_dump(mode="json"))
    try:
        generated = GeneratedContent.model_validate(response)
    except ValidationError as exc:
        raise CollaboratorError(f"generator returned malformed {job.job_type.value} output") from exc

    allowed = STAGE_FIELDS[job.job_type]
    values = {name: getattr(generated, name) for name in allowed if getattr(generated, name) is not None}
    if not values:
        raise CollaboratorError(f"generator returned no {'/'.join(allowed)} for {job.job_type.value}")

    changes = ArticleChanges(
        **values,
        change_type=RevisionChangeType.AI_GENERATED if job.job_type == JobType.DRAFT else RevisionChangeType.AI_REFINED,
        change_summary=f"pipeline stage {job.job_type.value}",
    )
    result: dict[str, Any] = {
        "stage": job.job_type.value,
        "article_id": payload.article_id,
        "fields": sorted(values),
    }
    if "body" in values:
        result["word_count"] = word_count(values["body"])
    return StageResult(result=result, article_changes=changes)
