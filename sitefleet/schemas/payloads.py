from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sitefleet.core.types import ContentType, JobType, RiskLevel


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ArticleStagePayload(JobPayload):
    site_id: str = Field(min_length=1)
    article_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    target_keyword: str | None = None
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE
    options: dict[str, Any] = Field(default_factory=dict)


class ContentRefreshPayload(ArticleStagePayload):
    reason: str | None = None


class SeedItem(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    slug: str | None = Field(default=None, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    target_keyword: str | None = None
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE


class BulkSeedPayload(JobPayload):
    site_id: str = Field(min_length=1)
    items: list[SeedItem] = Field(min_length=1, max_length=500)
    options: dict[str, Any] = Field(default_factory=dict)


class KeywordResearchPayload(JobPayload):
    site_id: str = Field(min_length=1)
    seed_keywords: list[str] = Field(min_length=1)
    limit: int = Field(default=20, ge=1, le=200)
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE
    options: dict[str, Any] = Field(default_factory=dict)


class SiteTaskPayload(JobPayload):
    site_id: str = Field(min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)


class DeployPayload(SiteTaskPayload):
    trigger: str = "manual"
    article_id: str | None = None


class GlobalTaskPayload(JobPayload):
    site_id: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class EvaluatePayload(GlobalTaskPayload):
    article_id: str | None = None


PAYLOAD_MODELS: dict[JobType, type[JobPayload]] = {
    JobType.RESEARCH: ArticleStagePayload,
    JobType.OUTLINE: ArticleStagePayload,
    JobType.DRAFT: ArticleStagePayload,
    JobType.HUMANIZE: ArticleStagePayload,
    JobType.SEO_OPTIMIZE: ArticleStagePayload,
    JobType.METADATA: ArticleStagePayload,
    JobType.CONTENT_REFRESH: ContentRefreshPayload,
    JobType.KEYWORD_RESEARCH: KeywordResearchPayload,
    JobType.BULK_SEED: BulkSeedPayload,
    JobType.DEPLOY: DeployPayload,
    JobType.ANALYTICS_FETCH: SiteTaskPayload,
    JobType.BACKLINK_CHECK: SiteTaskPayload,
    JobType.EXTERNAL_SIGNAL_FETCH: GlobalTaskPayload,
    JobType.RENEWAL_CHECK: GlobalTaskPayload,
    JobType.DATASET_CHECK: GlobalTaskPayload,
    JobType.EVALUATE: EvaluatePayload,
}
