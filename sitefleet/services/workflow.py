from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sitefleet.core.types import (
    ArticleStatus,
    ReviewAction,
    ReviewerRole,
    ReviewEventType,
    role_at_least,
)
from sitefleet.services.errors import PolicyViolationError, RepositoryConflictError
from sitefleet.services.policy import ResolvedPolicy
from sitefleet.services.rationale import require_rationale, validate_rationale_details
from sitefleet.services.records import Actor, ArticleRecord, QaResultRecord

EDITABLE_STATUSES = frozenset({ArticleStatus.DRAFT, ArticleStatus.REVIEW})
CLASSIFICATION_EDITABLE_STATUSES = frozenset({ArticleStatus.GENERATING, ArticleStatus.DRAFT})
PIPELINE_FAILED_REASON = "pipeline_failed"
CONTENT_REFRESHED_REASON = "content_refreshed"
# Stage output is dropped for these; the article no longer belongs to the pipeline.
STAGE_LOCKED_STATUSES = frozenset({ArticleStatus.ARCHIVED})

# action -> (allowed source statuses, target status, event type)
ACTION_TRANSITIONS: dict[ReviewAction, tuple[frozenset[ArticleStatus], ArticleStatus, ReviewEventType]] = {
    ReviewAction.SUBMIT: (frozenset({ArticleStatus.DRAFT}), ArticleStatus.REVIEW, ReviewEventType.SUBMITTED),
    ReviewAction.APPROVE: (frozenset({ArticleStatus.REVIEW}), ArticleStatus.APPROVED, ReviewEventType.APPROVED),
    ReviewAction.REJECT: (frozenset({ArticleStatus.REVIEW}), ArticleStatus.DRAFT, ReviewEventType.REJECTED),
    ReviewAction.PUBLISH: (frozenset({ArticleStatus.APPROVED}), ArticleStatus.PUBLISHED, ReviewEventType.PUBLISHED),
    ReviewAction.ARCHIVE: (
        frozenset({ArticleStatus.DRAFT, ArticleStatus.REVIEW, ArticleStatus.APPROVED, ArticleStatus.PUBLISHED}),
        ArticleStatus.ARCHIVED,
        ReviewEventType.ARCHIVED,
    ),
    ReviewAction.RESTORE: (frozenset({ArticleStatus.ARCHIVED}), ArticleStatus.DRAFT, ReviewEventType.REVERTED),
    ReviewAction.REOPEN: (
        frozenset({ArticleStatus.APPROVED, ArticleStatus.PUBLISHED}),
        ArticleStatus.REVIEW,
        ReviewEventType.REVERTED,
    ),
}


@dataclass(slots=True)
class TransitionPlan:
    from_status: ArticleStatus
    to_status: ArticleStatus
    event_type: ReviewEventType
    reason_code: str | None = None
    rationale: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReviewState:
    """Facts about the active revision that approval guards read."""

    policy: ResolvedPolicy
    latest_qa: QaResultRecord | None
    expert_signed: bool


def check_guards(article: ArticleRecord, state: ReviewState) -> dict[str, Any]:
    qa_passed = state.latest_qa is not None and state.latest_qa.all_passed
    unmet: list[str] = []
    if state.policy.requires_qa_checklist and not qa_passed:
        unmet.append("qa_checklist")
    if state.policy.requires_expert_signoff and not state.expert_signed:
        unmet.append("expert_signoff")
    return {
        "article_id": article.id,
        "status": article.status.value,
        "revision": article.revision,
        "policy": state.policy.as_dict(),
        "qa_passed": qa_passed,
        "latest_qa_result_id": state.latest_qa.id if state.latest_qa else None,
        "expert_signed": state.expert_signed,
        "unmet_guards": unmet,
        "ready_for_approval": article.status == ArticleStatus.REVIEW and not unmet,
    }


def _require_role(actor: Actor, required: ReviewerRole, *, action: ReviewAction) -> None:
    if not role_at_least(actor.role, required):
        raise PolicyViolationError(
            "required_role",
            f"{action.value} requires role {required.value} or higher; actor has {actor.role.value}",
        )


def plan_transition(
    article: ArticleRecord,
    action: ReviewAction,
    *,
    actor: Actor,
    state: ReviewState,
    rationale: str | None = None,
    details: dict[str, Any] | None = None,
) -> list[TransitionPlan]:
    """Decide the status changes a review action produces.

    Returns one plan per review event to append, in order. Raises
    PolicyViolationError naming the failed guard, RepositoryConflictError when
    the article is not in a state the action applies to, or
    RepositoryValidationError for a bad rationale.
    """
    sources, target, event_type = ACTION_TRANSITIONS[action]
    if article.status not in sources:
        raise RepositoryConflictError(
            f"cannot {action.value} article in status {article.status.value}"
        )

    policy = state.policy
    metadata: dict[str, Any] = {"policy_source": policy.source}
    reason_code: str | None = None
    clean_rationale = (rationale or "").strip() or None

    if action == ReviewAction.SUBMIT:
        _require_role(actor, ReviewerRole.EDITOR, action=action)
    elif action == ReviewAction.APPROVE:
        _require_role(actor, policy.required_role, action=action)
        readiness = check_guards(article, state)
        if "qa_checklist" in readiness["unmet_guards"]:
            raise PolicyViolationError(
                "qa_checklist",
                f"approval requires a passing QA checklist for revision {article.revision}",
            )
        if "expert_signoff" in readiness["unmet_guards"]:
            raise PolicyViolationError(
                "expert_signoff",
                f"approval requires expert signoff for revision {article.revision}",
            )
        clean_rationale = require_rationale(rationale, action=action)
        metadata["rationale_details"] = validate_rationale_details(article.content_type, details, action=action)
        if state.latest_qa is not None:
            metadata["qa_result_id"] = state.latest_qa.id
    elif action == ReviewAction.REJECT:
        _require_role(actor, policy.required_role, action=action)
        clean_rationale = require_rationale(rationale, action=action)
        parsed = validate_rationale_details(article.content_type, details, action=action)
        if parsed is not None:
            metadata["rationale_details"] = parsed
            reason_code = parsed["issue_codes"][0]
    elif action == ReviewAction.PUBLISH:
        _require_role(actor, policy.required_role, action=action)
    elif action in {ReviewAction.ARCHIVE, ReviewAction.RESTORE}:
        _require_role(actor, ReviewerRole.ADMIN, action=action)
    elif action == ReviewAction.REOPEN:
        _require_role(actor, policy.required_role, action=action)
        reason_code = "reopened"

    plans = [
        TransitionPlan(
            from_status=article.status,
            to_status=target,
            event_type=event_type,
            reason_code=reason_code,
            rationale=clean_rationale,
            metadata=metadata,
        )
    ]
    if action == ReviewAction.APPROVE and policy.auto_publish:
        plans.append(
            TransitionPlan(
                from_status=ArticleStatus.APPROVED,
                to_status=ArticleStatus.PUBLISHED,
                event_type=ReviewEventType.PUBLISHED,
                reason_code="auto_publish",
                metadata={"policy_source": policy.source, "auto_publish": True},
            )
        )
    return plans


def plan_pipeline_review(article: ArticleRecord) -> list[TransitionPlan]:
    """Status changes applied by the system actor when the stage chain finishes."""
    if article.status == ArticleStatus.GENERATING:
        return [
            TransitionPlan(ArticleStatus.GENERATING, ArticleStatus.DRAFT, ReviewEventType.CREATED, "pipeline_generated"),
            TransitionPlan(ArticleStatus.DRAFT, ArticleStatus.REVIEW, ReviewEventType.SUBMITTED, "pipeline_completed"),
        ]
    if article.status == ArticleStatus.DRAFT:
        return [TransitionPlan(ArticleStatus.DRAFT, ArticleStatus.REVIEW, ReviewEventType.SUBMITTED, "pipeline_completed")]
    return plan_stage_revert(article)


def plan_stage_revert(article: ArticleRecord) -> list[TransitionPlan]:
    """Send an approved or published article back to review once a stage rewrites it.

    Approval is bound to a revision and stage output creates a new one.
    """
    if article.status not in {ArticleStatus.APPROVED, ArticleStatus.PUBLISHED}:
        return []
    return [
        TransitionPlan(
            article.status,
            ArticleStatus.REVIEW,
            ReviewEventType.REVERTED,
            CONTENT_REFRESHED_REASON,
        )
    ]


def plan_pipeline_failure(article: ArticleRecord, *, job_type: str, error: str) -> list[TransitionPlan]:
    if article.status != ArticleStatus.GENERATING:
        return []
    return [
        TransitionPlan(
            ArticleStatus.GENERATING,
            ArticleStatus.DRAFT,
            ReviewEventType.REVERTED,
            PIPELINE_FAILED_REASON,
            metadata={"job_type": job_type, "error": error},
        )
    ]


def check_editable(article: ArticleRecord, *, actor: Actor, changes_classification: bool) -> None:
    if not role_at_least(actor.role, ReviewerRole.EDITOR):
        raise PolicyViolationError("required_role", "editing requires role editor or higher")
    if article.status not in EDITABLE_STATUSES:
        raise RepositoryConflictError(f"cannot edit article in status {article.status.value}")
    if changes_classification and article.status not in CLASSIFICATION_EDITABLE_STATUSES:
        raise RepositoryConflictError("risk level and content type are immutable once review begins")


def check_expert_signoff(article: ArticleRecord, *, actor: Actor) -> None:
    if not role_at_least(actor.role, ReviewerRole.EXPERT):
        raise PolicyViolationError("required_role", "expert signoff requires role expert or higher")
    if article.status != ArticleStatus.REVIEW:
        raise RepositoryConflictError(f"cannot sign off article in status {article.status.value}")


def check_can_comment(actor: Actor) -> None:
    if not role_at_least(actor.role, ReviewerRole.VIEWER):
        raise PolicyViolationError("required_role", "comments require an authenticated reviewer")
