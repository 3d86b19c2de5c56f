from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sitefleet.core.types import (
    ArticleStatus,
    ContentType,
    JobStatus,
    JobType,
    ReviewerRole,
    ReviewEventType,
    RevisionChangeType,
    RiskLevel,
)


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class JobRecord:
    id: str
    job_type: JobType
    status: JobStatus
    site_id: str | None = None
    article_id: str | None = None
    keyword_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    scheduled_for: datetime | None = None
    locked_until: datetime | None = None
    locked_by: str | None = None
    lock_token: str | None = None
    seq: int = 0


@dataclass(slots=True)
class JobCreate:
    job_type: JobType
    site_id: str | None = None
    article_id: str | None = None
    keyword_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_attempts: int | None = None
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class ArticleRecord:
    id: str
    site_id: str
    title: str
    slug: str
    status: ArticleStatus
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE
    target_keyword: str | None = None
    body: str | None = None
    outline: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    meta_description: str | None = None
    content_fingerprint: str | None = None
    revision: int = 0
    published_at: datetime | None = None
    published_by: str | None = None
    last_reviewed_at: datetime | None = None
    last_reviewed_by: str | None = None
    review_requested_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ArticleCreate:
    site_id: str
    title: str
    slug: str
    target_keyword: str | None = None
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE


@dataclass(slots=True)
class ArticleChanges:
    """Content produced by a pipeline stage or a manual edit."""

    title: str | None = None
    slug: str | None = None
    body: str | None = None
    outline: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    meta_description: str | None = None
    risk_level: RiskLevel | None = None
    content_type: ContentType | None = None
    change_type: RevisionChangeType = RevisionChangeType.AI_GENERATED
    change_summary: str | None = None


@dataclass(slots=True)
class ArticleSeed:
    site_id: str
    title: str
    slug: str
    target_keyword: str | None = None
    content_type: ContentType = ContentType.ARTICLE
    risk_level: RiskLevel = RiskLevel.NONE


@dataclass(slots=True)
class FollowOnJob:
    job: JobCreate
    seed: ArticleSeed | None = None
    skip_if_active: bool = False


@dataclass(slots=True)
class ArticleRevisionRecord:
    id: str
    article_id: str
    revision_number: int
    title: str | None
    body: str | None
    meta_description: str | None
    content_hash: str
    word_count: int
    change_type: RevisionChangeType
    change_summary: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class ReviewEventRecord:
    id: str
    article_id: str
    actor_id: str
    actor_role: ReviewerRole
    event_type: ReviewEventType
    revision: int | None = None
    reason_code: str | None = None
    rationale: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(slots=True)
class ApprovalPolicyRecord:
    id: str
    risk_level: RiskLevel
    required_role: ReviewerRole
    requires_qa_checklist: bool
    requires_expert_signoff: bool
    auto_publish: bool
    site_id: str | None = None
    content_type: ContentType | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ChecklistItem:
    id: str
    category: str
    label: str
    required: bool
    evidence_fields: tuple[str, ...] = ()


@dataclass(slots=True)
class QaTemplateRecord:
    id: str
    name: str
    items: list[ChecklistItem]
    content_type: ContentType | None = None
    risk_level: RiskLevel | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class QaResultRecord:
    id: str
    article_id: str
    template_id: str
    reviewer_id: str
    revision: int
    results: dict[str, dict[str, Any]]
    all_passed: bool
    test_run_id: str | None = None
    harness_version: str | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class IdempotencyRecord:
    key: str
    method: str
    path: str
    state: str
    status_code: int | None
    response_body: str | None
    created_at: datetime
    expires_at: datetime


@dataclass(slots=True)
class Actor:
    actor_id: str
    role: ReviewerRole

    @classmethod
    def system(cls) -> Actor:
        return cls(actor_id="pipeline", role=ReviewerRole.SYSTEM)


@dataclass(slots=True)
class JobCompletion:
    job: JobRecord
    applied: bool
    reason: str | None = None
    follow_on_job_ids: list[str] = field(default_factory=list)
    article_status: ArticleStatus | None = None


@dataclass(slots=True)
class TransitionResult:
    article: ArticleRecord
    previous_status: ArticleStatus
    event: ReviewEventRecord
    auto_published: bool = False
    deploy_job_id: str | None = None
