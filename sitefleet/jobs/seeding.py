from __future__ import annotations

from typing import Any

from sitefleet.core.types import ContentType, JobType, RiskLevel
from sitefleet.schemas.payloads import BulkSeedPayload, ContentRefreshPayload, KeywordResearchPayload
from sitefleet.services.collaborators import CollaboratorClient
from sitefleet.services.content import slugify
from sitefleet.services.pipeline import StageResult
from sitefleet.services.records import ArticleSeed, FollowOnJob, JobCreate, JobRecord


async def execute_keyword_research(
    job: JobRecord,
    payload: KeywordResearchPayload,
    *,
    client: CollaboratorClient,
) -> StageResult:
    response = await client.execute(JobType.KEYWORD_RESEARCH, payload.model_dump(mode="json"))
    raw_keywords = response.get("keywords")
    keywords: list[Any] = raw_keywords if isinstance(raw_keywords, list) else []

    follow_on: list[FollowOnJob] = []
    seen_slugs: set[str] = set()
    for entry in keywords:
        seed = _seed_from_keyword(entry, payload)
        if seed is None or seed.slug in seen_slugs:
            continue
        seen_slugs.add(seed.slug)
        follow_on.append(_research_follow_on(job, seed, options=payload.options))
        if len(follow_on) >= payload.limit:
            break

    return StageResult(
        result={
            "site_id": payload.site_id,
            "keywords_returned": len(keywords),
            "articles_seeded": len(follow_on),
        },
        follow_on=follow_on,
    )


async def execute_bulk_seed(job: JobRecord, payload: BulkSeedPayload) -> StageResult:
    follow_on: list[FollowOnJob] = []
    seen_slugs: set[str] = set()
    for item in payload.items:
        seed = ArticleSeed(
            site_id=payload.site_id,
            title=item.title,
            slug=item.slug or slugify(item.title),
            target_keyword=item.target_keyword,
            content_type=item.content_type,
            risk_level=item.risk_level,
        )
        if seed.slug in seen_slugs:
            continue
        seen_slugs.add(seed.slug)
        follow_on.append(_research_follow_on(job, seed, options=payload.options))

    return StageResult(
        result={"site_id": payload.site_id, "items": len(payload.items), "articles_seeded": len(follow_on)},
        follow_on=follow_on,
    )


async def execute_content_refresh(job: JobRecord, payload: ContentRefreshPayload) -> StageResult:
    research_payload = payload.model_dump(mode="json", exclude={"reason"})
    return StageResult(
        result={"article_id": payload.article_id, "reason": payload.reason or "scheduled_refresh"},
        follow_on=[
            FollowOnJob(
                job=JobCreate(
                    job_type=JobType.RESEARCH,
                    site_id=payload.site_id,
                    article_id=payload.article_id,
                    payload=research_payload,
                    priority=job.priority,
                ),
                skip_if_active=True,
            )
        ],
    )


def _seed_from_keyword(entry: Any, payload: KeywordResearchPayload) -> ArticleSeed | None:
    if isinstance(entry, str):
        entry = {"keyword": entry}
    if not isinstance(entry, dict):
        return None
    keyword = entry.get("keyword")
    if not isinstance(keyword, str) or not keyword.strip():
        return None
    keyword = keyword.strip()
    title = entry.get("title") if isinstance(entry.get("title"), str) and entry["title"].strip() else keyword
    return ArticleSeed(
        site_id=payload.site_id,
        title=title.strip(),
        slug=slugify(title),
        target_keyword=keyword,
        content_type=_enum_or_default(ContentType, entry.get("content_type"), payload.content_type),
        risk_level=_enum_or_default(RiskLevel, entry.get("risk_level"), payload.risk_level),
    )


def _research_follow_on(job: JobRecord, seed: ArticleSeed, *, options: dict[str, Any]) -> FollowOnJob:
    return FollowOnJob(
        job=JobCreate(
            job_type=JobType.RESEARCH,
            site_id=seed.site_id,
            payload={"options": dict(options)} if options else {},
            priority=job.priority,
        ),
        seed=seed,
    )


def _enum_or_default(enum_type, value: Any, default):
    try:
        return enum_type(value)
    except ValueError:
        return default
