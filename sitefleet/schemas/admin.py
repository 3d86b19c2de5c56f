from datetime import datetime

from pydantic import BaseModel, ConfigDict

from sitefleet.core.types import ContentType, ReviewerRole, RiskLevel


class ApprovalPolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    site_id: str | None = None
    content_type: ContentType | None = None
    risk_level: RiskLevel
    required_role: ReviewerRole
    requires_qa_checklist: bool
    requires_expert_signoff: bool
    auto_publish: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ApprovalPolicyUpsertRequest(BaseModel):
    site_id: str | None = None
    content_type: ContentType | None = None
    risk_level: RiskLevel
    required_role: ReviewerRole = ReviewerRole.REVIEWER
    requires_qa_checklist: bool = True
    requires_expert_signoff: bool = False
    auto_publish: bool = False


class ResolvedPolicyOut(BaseModel):
    required_role: ReviewerRole
    requires_qa_checklist: bool
    requires_expert_signoff: bool
    auto_publish: bool
    source: str
    policy_id: str | None = None
