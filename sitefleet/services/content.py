from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import datetime
from uuid import uuid4

from sitefleet.core.types import ArticleStatus, ReviewEventType
from sitefleet.services.records import (
    Actor,
    ArticleChanges,
    ArticleRecord,
    ArticleRevisionRecord,
    ReviewEventRecord,
)
from sitefleet.services.workflow import CLASSIFICATION_EDITABLE_STATUSES, TransitionPlan

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")
_WORD_RE = re.compile(r"\S+")


def slugify(value: str, *, max_length: int = 80) -> str:
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_STRIP_RE.sub("-", normalized.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "untitled"


def content_hash(body: str | None) -> str:
    return hashlib.sha256((body or "").encode("utf-8")).hexdigest()


def word_count(body: str | None) -> int:
    return len(_WORD_RE.findall(body or ""))


def apply_article_changes(article: ArticleRecord, changes: ArticleChanges, *, now: datetime) -> list[str]:
    """Copy non-null fields onto the article and return the names that changed.

    Risk level and content type are only applied while the article has not
    entered review; later values are ignored and left out of the result.
    """
    changed: list[str] = []
    for name in ("title", "slug", "body", "outline", "research", "meta_description"):
        value = getattr(changes, name)
        if value is not None and value != getattr(article, name):
            setattr(article, name, value)
            changed.append(name)
    if article.status in CLASSIFICATION_EDITABLE_STATUSES:
        for name in ("risk_level", "content_type"):
            value = getattr(changes, name)
            if value is not None and value != getattr(article, name):
                setattr(article, name, value)
                changed.append(name)
    if "body" in changed:
        article.content_fingerprint = content_hash(article.body)
    if changed:
        article.updated_at = now
    return changed


def next_revision(
    article: ArticleRecord,
    changes: ArticleChanges,
    *,
    actor: Actor,
    now: datetime,
) -> ArticleRevisionRecord:
    article.revision += 1
    return ArticleRevisionRecord(
        id=str(uuid4()),
        article_id=article.id,
        revision_number=article.revision,
        title=article.title,
        body=article.body,
        meta_description=article.meta_description,
        content_hash=content_hash(article.body),
        word_count=word_count(article.body),
        change_type=changes.change_type,
        change_summary=changes.change_summary,
        created_by=actor.actor_id,
        created_at=now,
    )


def apply_plan(article: ArticleRecord, plan: TransitionPlan, *, actor: Actor, now: datetime) -> ReviewEventRecord:
    """Move the article along one planned transition and build its review event."""
    article.status = plan.to_status
    article.updated_at = now
    if plan.event_type in {ReviewEventType.APPROVED, ReviewEventType.REJECTED}:
        article.last_reviewed_at = now
        article.last_reviewed_by = actor.actor_id
    if plan.to_status == ArticleStatus.REVIEW:
        article.review_requested_at = now
    if plan.to_status == ArticleStatus.PUBLISHED:
        article.published_at = now
        article.published_by = actor.actor_id
    metadata = dict(plan.metadata)
    metadata.setdefault("from_status", plan.from_status.value)
    metadata.setdefault("to_status", plan.to_status.value)
    return ReviewEventRecord(
        id=str(uuid4()),
        article_id=article.id,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        event_type=plan.event_type,
        revision=article.revision,
        reason_code=plan.reason_code,
        rationale=plan.rationale,
        metadata=metadata,
        created_at=now,
    )


def build_event(
    article: ArticleRecord,
    event_type: ReviewEventType,
    *,
    actor: Actor,
    now: datetime,
    rationale: str | None = None,
    reason_code: str | None = None,
    metadata: dict | None = None,
) -> ReviewEventRecord:
    return ReviewEventRecord(
        id=str(uuid4()),
        article_id=article.id,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        event_type=event_type,
        revision=article.revision,
        reason_code=reason_code,
        rationale=rationale,
        metadata=metadata or {},
        created_at=now,
    )
