from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError

from sitefleet.core.types import ContentType, ReviewAction
from sitefleet.services.errors import RepositoryValidationError

IssueCode = Annotated[str, StringConstraints(pattern=r"^[a-z0-9_:-]+$", min_length=2, max_length=48)]
EvidenceQuality = Literal["strong", "moderate", "weak"]
RationaleRisk = Literal["low", "medium", "high"]


class RationaleDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=20, max_length=2000)
    evidence_quality: EvidenceQuality
    risk_level: RationaleRisk
    confidence_score: int = Field(ge=0, le=100)
    issue_codes: list[IssueCode] = Field(default_factory=list, max_length=8)
    citations_checked: bool
    disclosure_checked: bool


class GeneralRationale(RationaleDetails):
    factuality_assessment: Literal["verified", "partially_verified", "unverified"]
    structure_quality: Literal["strong", "adequate", "weak"]


class CalculatorRationale(RationaleDetails):
    methodology_check: Literal["verified", "needs_changes", "missing"]
    formula_coverage: Literal["full", "partial", "none"]
    edge_cases_tested: bool
    units_verified: bool


class ComparisonRationale(RationaleDetails):
    criteria_coverage: Literal["complete", "partial", "missing"]
    source_diversity: Literal["single_source", "multiple_sources"]
    affiliate_disclosure_checked: bool


class LeadCaptureRationale(RationaleDetails):
    offer_accuracy_checked: bool
    form_consent_checked: bool
    disclosure_placement: Literal["above_fold", "inline", "footer"]


class HealthDecisionRationale(RationaleDetails):
    medical_safety_review: Literal["complete", "partial", "missing"]
    harm_risk: Literal["low", "medium", "high"]
    professional_care_cta_present: bool


class InteractiveFlowRationale(RationaleDetails):
    branching_logic_validated: bool
    eligibility_copy_clear: bool
    fallback_path_tested: bool


RATIONALE_MODELS: dict[ContentType, type[RationaleDetails]] = {
    ContentType.CALCULATOR: CalculatorRationale,
    ContentType.COMPARISON: ComparisonRationale,
    ContentType.REVIEW: ComparisonRationale,
    ContentType.LEAD_CAPTURE: LeadCaptureRationale,
    ContentType.HEALTH_DECISION: HealthDecisionRationale,
    ContentType.WIZARD: InteractiveFlowRationale,
    ContentType.CONFIGURATOR: InteractiveFlowRationale,
    ContentType.QUIZ: InteractiveFlowRationale,
    ContentType.SURVEY: InteractiveFlowRationale,
    ContentType.ASSESSMENT: InteractiveFlowRationale,
}


def rationale_model_for(content_type: ContentType) -> type[RationaleDetails]:
    return RATIONALE_MODELS.get(content_type, GeneralRationale)


def require_rationale(rationale: str | None, *, action: ReviewAction) -> str:
    text = (rationale or "").strip()
    if not text:
        raise RepositoryValidationError(f"{action.value} requires a non-empty rationale")
    return text


def validate_rationale_details(
    content_type: ContentType,
    details: dict[str, Any] | None,
    *,
    action: ReviewAction,
) -> dict[str, Any] | None:
    """Validate structured review rationale for the article's content type.

    Approval always needs details. Rejection details are optional, but when
    supplied they must name at least one issue code.
    """
    if details is None:
        if action == ReviewAction.APPROVE:
            raise RepositoryValidationError("approve requires structured rationale details")
        return None

    model = rationale_model_for(content_type)
    try:
        parsed = model.model_validate(details)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise RepositoryValidationError(
            f"invalid rationale details for {content_type.value}: {', '.join(fields)}"
        ) from exc

    if action == ReviewAction.REJECT and not parsed.issue_codes:
        raise RepositoryValidationError("reject rationale details must include at least one issue code")
    return parsed.model_dump()
