from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sitefleet.core.types import ContentType, RiskLevel


class ChecklistItemIn(BaseModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    category: str = Field(default="general", min_length=1, max_length=64)
    label: str = Field(min_length=1, max_length=300)
    required: bool = False
    evidence_fields: list[str] = Field(default_factory=list)


class ChecklistItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    category: str
    label: str
    required: bool
    evidence_fields: list[str] = Field(default_factory=list)


class QaTemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    content_type: ContentType | None = None
    risk_level: RiskLevel | None = None
    items: list[ChecklistItemOut]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class QaTemplateUpsertRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    content_type: ContentType | None = None
    risk_level: RiskLevel | None = None
    items: list[ChecklistItemIn] = Field(min_length=1, max_length=100)


class ChecklistEntryIn(BaseModel):
    checked: bool
    notes: str | None = Field(default=None, max_length=2000)


class QaSubmitRequest(BaseModel):
    template_id: str | None = Field(default=None, min_length=1)
    results: dict[str, ChecklistEntryIn]
    test_run_id: str | None = Field(default=None, max_length=200)
    harness_version: str | None = Field(default=None, max_length=100)


class QaResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class ArticleChecklistOut(BaseModel):
    template: QaTemplateOut
    results: list[QaResultOut] = Field(default_factory=list)
