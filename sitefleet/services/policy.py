from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sitefleet.core.types import ContentType, ReviewerRole, RiskLevel
from sitefleet.services.records import ApprovalPolicyRecord

POLICY_REVIEWER_ROLES = frozenset({ReviewerRole.EDITOR, ReviewerRole.REVIEWER, ReviewerRole.EXPERT, ReviewerRole.ADMIN})

# Ordered most specific first.
POLICY_SOURCES = (
    "site_content_type_risk",
    "site_risk",
    "content_type_risk",
    "risk",
)


@dataclass(slots=True, frozen=True)
class ResolvedPolicy:
    required_role: ReviewerRole
    requires_qa_checklist: bool
    requires_expert_signoff: bool
    auto_publish: bool
    source: str
    policy_id: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "required_role": self.required_role.value,
            "requires_qa_checklist": self.requires_qa_checklist,
            "requires_expert_signoff": self.requires_expert_signoff,
            "auto_publish": self.auto_publish,
            "source": self.source,
            "policy_id": self.policy_id,
        }


def default_policy(risk_level: RiskLevel) -> ResolvedPolicy:
    return ResolvedPolicy(
        required_role=ReviewerRole.REVIEWER,
        requires_qa_checklist=True,
        requires_expert_signoff=risk_level == RiskLevel.HIGH,
        auto_publish=False,
        source="default",
    )


def _policy_source(policy: ApprovalPolicyRecord) -> str:
    if policy.site_id is not None and policy.content_type is not None:
        return "site_content_type_risk"
    if policy.site_id is not None:
        return "site_risk"
    if policy.content_type is not None:
        return "content_type_risk"
    return "risk"


def resolve_policy(
    *,
    site_id: str | None,
    content_type: ContentType,
    risk_level: RiskLevel,
    policies: Iterable[ApprovalPolicyRecord],
) -> ResolvedPolicy:
    """Resolve the approval policy for an article.

    Pure function over the supplied policy rows. A row only matches when its
    risk level equals the article's and each of its optional keys (site,
    content type) is either unset or equal to the article's value. The most
    specific match wins; with no match the conservative global default applies.
    """
    best: tuple[int, ApprovalPolicyRecord] | None = None
    for policy in policies:
        if policy.risk_level != risk_level:
            continue
        if policy.site_id is not None and policy.site_id != site_id:
            continue
        if policy.content_type is not None and policy.content_type != content_type:
            continue
        rank = POLICY_SOURCES.index(_policy_source(policy))
        # Ties on rank are broken by id so resolution never depends on row order.
        if best is None or (rank, policy.id) < (best[0], best[1].id):
            best = (rank, policy)

    if best is None:
        return default_policy(risk_level)

    _, matched = best
    return ResolvedPolicy(
        required_role=matched.required_role,
        requires_qa_checklist=matched.requires_qa_checklist,
        requires_expert_signoff=matched.requires_expert_signoff,
        auto_publish=matched.auto_publish,
        source=_policy_source(matched),
        policy_id=matched.id,
    )
