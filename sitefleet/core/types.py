from enum import Enum


class JobType(str, Enum):
    OUTLINE = "outline"
    DRAFT = "draft"
    HUMANIZE = "humanize"
    SEO_OPTIMIZE = "seo_optimize"
    METADATA = "metadata"
    DEPLOY = "deploy"
    ANALYTICS_FETCH = "analytics_fetch"
    KEYWORD_RESEARCH = "keyword_research"
    BULK_SEED = "bulk_seed"
    RESEARCH = "research"
    EVALUATE = "evaluate"
    CONTENT_REFRESH = "content_refresh"
    EXTERNAL_SIGNAL_FETCH = "external_signal_fetch"
    BACKLINK_CHECK = "backlink_check"
    RENEWAL_CHECK = "renewal_check"
    DATASET_CHECK = "dataset_check"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ArticleStatus(str, Enum):
    GENERATING = "generating"
    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContentType(str, Enum):
    ARTICLE = "article"
    COMPARISON = "comparison"
    CALCULATOR = "calculator"
    COST_GUIDE = "cost_guide"
    LEAD_CAPTURE = "lead_capture"
    HEALTH_DECISION = "health_decision"
    CHECKLIST = "checklist"
    FAQ = "faq"
    REVIEW = "review"
    WIZARD = "wizard"
    CONFIGURATOR = "configurator"
    QUIZ = "quiz"
    SURVEY = "survey"
    ASSESSMENT = "assessment"
    INTERACTIVE_INFOGRAPHIC = "interactive_infographic"
    INTERACTIVE_MAP = "interactive_map"


class ReviewerRole(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    REVIEWER = "reviewer"
    EXPERT = "expert"
    ADMIN = "admin"
    SYSTEM = "system"


ROLE_RANK: dict[ReviewerRole, int] = {
    ReviewerRole.VIEWER: 0,
    ReviewerRole.EDITOR: 1,
    ReviewerRole.REVIEWER: 2,
    ReviewerRole.EXPERT: 3,
    ReviewerRole.ADMIN: 4,
    # The pipeline acts as its own principal; it never satisfies human review guards.
    ReviewerRole.SYSTEM: -1,
}


def role_at_least(role: ReviewerRole, required: ReviewerRole) -> bool:
    return ROLE_RANK[role] >= ROLE_RANK[required]


class ReviewEventType(str, Enum):
    CREATED = "created"
    EDITED = "edited"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    REVERTED = "reverted"
    COMMENT = "comment"
    QA_COMPLETED = "qa_completed"
    EXPERT_SIGNED = "expert_signed"


class ReviewAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    PUBLISH = "publish"
    ARCHIVE = "archive"
    RESTORE = "restore"
    REOPEN = "reopen"


class RevisionChangeType(str, Enum):
    AI_GENERATED = "ai_generated"
    AI_REFINED = "ai_refined"
    MANUAL_EDIT = "manual_edit"
    BULK_REFRESH = "bulk_refresh"


class BatchItemOutcome(str, Enum):
    READY = "ready"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# Stage order for a single article; each completed stage enqueues the next.
ARTICLE_STAGE_CHAIN: tuple[JobType, ...] = (
    JobType.RESEARCH,
    JobType.OUTLINE,
    JobType.DRAFT,
    JobType.HUMANIZE,
    JobType.SEO_OPTIMIZE,
    JobType.METADATA,
)


def next_article_stage(job_type: JobType) -> JobType | None:
    if job_type not in ARTICLE_STAGE_CHAIN:
        return None
    index = ARTICLE_STAGE_CHAIN.index(job_type)
    if index + 1 >= len(ARTICLE_STAGE_CHAIN):
        return None
    return ARTICLE_STAGE_CHAIN[index + 1]
