from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from sitefleet.core.types import ContentType, RiskLevel
from sitefleet.services.errors import QaValidationError, RepositoryValidationError
from sitefleet.services.records import ChecklistItem, QaTemplateRecord

CALC_EVIDENCE_FIELDS = ("test_run_id", "harness_version")
DEFAULT_TEMPLATE_PREFIX = "default"

_BASE_ITEMS = (
    ChecklistItem(id="purpose", category="content", label="Content fulfills stated purpose", required=True),
    ChecklistItem(id="accuracy", category="content", label="Facts are accurate and current", required=True),
    ChecklistItem(id="grammar", category="content", label="Grammar and spelling correct", required=True),
    ChecklistItem(id="formatting", category="format", label="Formatting renders correctly", required=False),
    ChecklistItem(id="links", category="format", label="Internal and external links resolve", required=False),
)
_ELEVATED_ITEMS = (
    ChecklistItem(id="citations", category="compliance", label="Claims cite reputable sources", required=True),
    ChecklistItem(id="stats_sourced", category="compliance", label="Statistics carry a source", required=True),
    ChecklistItem(id="disclosure", category="compliance", label="Affiliate and advertising disclosure present", required=True),
)
_HIGH_ITEMS = (
    ChecklistItem(id="not_advice", category="compliance", label="Not-professional-advice notice present", required=True),
    ChecklistItem(id="expert_review", category="compliance", label="Reviewed by a subject-matter expert", required=True),
    ChecklistItem(
        id="calc_tested",
        category="calculator",
        label="Calculations exercised by an automated test run",
        required=False,
        evidence_fields=CALC_EVIDENCE_FIELDS,
    ),
    ChecklistItem(id="units", category="calculator", label="Units and rounding verified", required=False),
)


@dataclass(slots=True)
class QaEvaluation:
    results: dict[str, dict[str, Any]]
    all_passed: bool
    test_run_id: str | None
    harness_version: str | None


def default_checklist(risk_level: RiskLevel) -> QaTemplateRecord:
    items = list(_BASE_ITEMS)
    if risk_level in {RiskLevel.MEDIUM, RiskLevel.HIGH}:
        items.extend(_ELEVATED_ITEMS)
    if risk_level == RiskLevel.HIGH:
        items.extend(_HIGH_ITEMS)
    return QaTemplateRecord(
        id=f"{DEFAULT_TEMPLATE_PREFIX}:{risk_level.value}",
        name=f"Default {risk_level.value} risk checklist",
        items=items,
        risk_level=risk_level,
    )


def select_template(
    *,
    content_type: ContentType,
    risk_level: RiskLevel,
    templates: Iterable[QaTemplateRecord],
) -> QaTemplateRecord:
    """Pick the checklist for an article: exact match, then risk only, then the built-in default."""
    risk_only: QaTemplateRecord | None = None
    for template in sorted(templates, key=lambda candidate: candidate.id):
        if template.risk_level != risk_level:
            continue
        if template.content_type == content_type:
            return template
        if template.content_type is None and risk_only is None:
            risk_only = template
    if risk_only is not None:
        return risk_only
    return default_checklist(risk_level)


def parse_checklist_items(raw_items: Iterable[dict[str, Any]]) -> list[ChecklistItem]:
    items: list[ChecklistItem] = []
    seen: set[str] = set()
    for raw in raw_items:
        item_id = str(raw.get("id") or "").strip()
        if not item_id:
            raise RepositoryValidationError("checklist item id is required")
        if item_id in seen:
            raise RepositoryValidationError(f"duplicate checklist item id: {item_id}")
        seen.add(item_id)
        items.append(
            ChecklistItem(
                id=item_id,
                category=str(raw.get("category") or "general"),
                label=str(raw.get("label") or item_id),
                required=bool(raw.get("required", False)),
                evidence_fields=tuple(raw.get("evidence_fields") or ()),
            )
        )
    if not items:
        raise RepositoryValidationError("checklist template must contain at least one item")
    return items


def evaluate_submission(
    template: QaTemplateRecord,
    results: dict[str, dict[str, Any]],
    evidence: dict[str, Any] | None,
    *,
    require_all_required_checked: bool = True,
) -> QaEvaluation:
    """Validate a checklist submission against its template.

    Raises QaValidationError naming every missing, unchecked, unknown or
    evidence-less item; callers must not persist anything in that case.
    """
    evidence = {key: value for key, value in (evidence or {}).items() if value not in (None, "")}
    known = {item.id: item for item in template.items}

    unknown_items = sorted(item_id for item_id in results if item_id not in known)
    missing_items = [item.id for item in template.items if item.required and item.id not in results]
    unchecked_items = [
        item.id
        for item in template.items
        if item.required and item.id in results and not _is_checked(results[item.id])
    ]
    missing_evidence: dict[str, list[str]] = {}
    for item in template.items:
        if not item.evidence_fields or item.id not in results or not _is_checked(results[item.id]):
            continue
        absent = [name for name in item.evidence_fields if name not in evidence]
        if absent:
            missing_evidence[item.id] = absent

    problems: list[str] = []
    if missing_items:
        problems.append(f"missing required items: {', '.join(missing_items)}")
    if require_all_required_checked and unchecked_items:
        problems.append(f"required items not checked: {', '.join(unchecked_items)}")
    if unknown_items:
        problems.append(f"unknown items: {', '.join(unknown_items)}")
    if missing_evidence:
        problems.append(f"missing evidence for: {', '.join(sorted(missing_evidence))}")
    if problems:
        raise QaValidationError(
            "; ".join(problems),
            missing_items=missing_items,
            unchecked_items=unchecked_items if require_all_required_checked else [],
            unknown_items=unknown_items,
            missing_evidence=missing_evidence,
        )

    normalized = {
        item_id: {"checked": _is_checked(entry), "notes": entry.get("notes")}
        for item_id, entry in results.items()
    }
    all_passed = all(normalized[item.id]["checked"] for item in template.items if item.required)
    return QaEvaluation(
        results=normalized,
        all_passed=all_passed,
        test_run_id=_text(evidence.get("test_run_id")),
        harness_version=_text(evidence.get("harness_version")),
    )


def _is_checked(entry: dict[str, Any]) -> bool:
    return entry.get("checked") is True


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
