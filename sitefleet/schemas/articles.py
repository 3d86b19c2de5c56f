from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from sitefleet.core.types import (
    ArticleStatus,
    ContentType,
    ReviewerRole,
    ReviewEventType,
    RevisionChangeType,
    RiskLevel,
)

FirstStage = Literal["research", "outline", "draft", "none"]


class ArticleCreateRequest(BaseModel):
    site_id: str = Field(min_length=1, max_length=200)
    title: str = Field(min_length=1, max_length=300)
    slug: str | None = Field(default=None, max_length=120, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    target_keyword: str | None = Field(default=None, max_length=300)
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE
    first_stage: FirstStage = "research"
    priority: int = Field(default=0, ge=-100, le=100)


class ArticlePatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=300)
    slug: str | None = Field(default=None, max_length=120, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    body: str | None = None
    outline: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    meta_description: str | None = Field(default=None, max_length=500)
    risk_level: RiskLevel | None = None
    content_type: ContentType | None = None
    change_summary: str | None = Field(default=None, max_length=2000)


class ArticleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    site_id: str
    title: str
    slug: str
    status: ArticleStatus
    content_type: ContentType
    risk_level: RiskLevel
    target_keyword: str | None = None
    body: str | None = None
    outline: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    meta_description: str | None = None
    content_fingerprint: str | None = None
    revision: int
    published_at: datetime | None = None
    published_by: str | None = None
    last_reviewed_at: datetime | None = None
    last_reviewed_by: str | None = None
    review_requested_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ArticleCreatedOut(BaseModel):
    article: ArticleOut
    job_id: str | None = None


class TransitionRequest(BaseModel):
    rationale: str | None = Field(default=None, max_length=4000)
    details: dict[str, Any] | None = None


class ReviewEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    article_id: str
    revision: int | None = None
    actor_id: str
    actor_role: ReviewerRole
    event_type: ReviewEventType
    reason_code: str | None = None
    rationale: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class TransitionOut(BaseModel):
    article: ArticleOut
    previous_status: ArticleStatus
    event: ReviewEventOut
    auto_published: bool = False
    deploy_job_id: str | None = None


class CommentRequest(BaseModel):
    body: str = Field(min_length=1, max_length=4000)


class ExpertSignoffRequest(BaseModel):
    rationale: str | None = Field(default=None, max_length=4000)
    credentials: str | None = Field(default=None, max_length=500)


class ArticleRevisionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    article_id: str
    revision_number: int
    title: str | None = None
    body: str | None = None
    meta_description: str | None = None
    content_hash: str
    word_count: int
    change_type: RevisionChangeType
    change_summary: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class ReviewReadinessOut(BaseModel):
    article_id: str
    status: ArticleStatus
    revision: int
    policy: dict[str, Any]
    qa_passed: bool
    latest_qa_result_id: str | None = None
    expert_signed: bool
    unmet_guards: list[str] = Field(default_factory=list)
    ready_for_approval: bool
