from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from uuid import uuid4

from sitefleet.core.auth import hash_api_key
from sitefleet.core.types import (
    ARTICLE_STAGE_CHAIN,
    ArticleStatus,
    ContentType,
    JobStatus,
    JobType,
    ReviewAction,
    ReviewerRole,
    ReviewEventType,
    RiskLevel,
    role_at_least,
)
from sitefleet.services.content import (
    apply_article_changes,
    apply_plan,
    build_event,
    next_revision,
    slugify,
)
from sitefleet.services.errors import (
    PolicyViolationError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from sitefleet.services.idempotency import (
    STATE_COMPLETED,
    Proceed,
    Replay,
    decide_existing,
    started_record,
    validate_idempotency_key,
)
from sitefleet.services.policy import POLICY_REVIEWER_ROLES, ResolvedPolicy, resolve_policy
from sitefleet.services.qa import (
    DEFAULT_TEMPLATE_PREFIX,
    default_checklist,
    evaluate_submission,
    parse_checklist_items,
    select_template,
)
from sitefleet.services.queue import (
    CANCELLABLE_JOB_STATUSES,
    LEASE_EXHAUSTED_MESSAGE,
    PURGEABLE_JOB_STATUSES,
    QueueSloThresholds,
    article_stage_job,
    build_queue_slo_alerts,
    check_job_create,
    claim_sort_key,
    compute_error_rate_pct,
    compute_retry_delay_seconds,
    is_claimable,
    is_lease_exhausted,
    lease_deadline,
    retry_message,
    stage_continuation,
)
from sitefleet.services.records import (
    Actor,
    ApprovalPolicyRecord,
    ArticleChanges,
    ArticleCreate,
    ArticleRecord,
    ArticleRevisionRecord,
    ArticleSeed,
    FollowOnJob,
    IdempotencyRecord,
    JobCompletion,
    JobCreate,
    JobRecord,
    MachineCredentialRecord,
    QaResultRecord,
    QaTemplateRecord,
    ReviewEventRecord,
    TransitionResult,
)
from sitefleet.services.workflow import (
    STAGE_LOCKED_STATUSES,
    ReviewState,
    TransitionPlan,
    check_can_comment,
    check_editable,
    check_expert_signoff,
    check_guards,
    plan_pipeline_failure,
    plan_pipeline_review,
    plan_stage_revert,
    plan_transition,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Process-local backend for local runs and tests.

    Every operation runs under a single asyncio lock, so claims and transitions
    are atomic within one process. Multi-process workers need the Postgres backend.
    """

    def __init__(
        self,
        *,
        job_max_attempts: int = 3,
        job_retry_base_seconds: int = 60,
        job_retry_max_seconds: int = 1800,
        qa_require_all_required_checked: bool = True,
        idempotency_ttl_seconds: int = 24 * 60 * 60,
        idempotency_in_flight_ttl_seconds: int = 5 * 60,
        slo_thresholds: QueueSloThresholds | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self.qa_require_all_required_checked = qa_require_all_required_checked
        self.idempotency_ttl_seconds = idempotency_ttl_seconds
        self.idempotency_in_flight_ttl_seconds = idempotency_in_flight_ttl_seconds
        self.slo_thresholds = slo_thresholds or QueueSloThresholds(
            pending_age_seconds=30 * 60,
            error_rate_pct=10.0,
            worker_idle_seconds=15 * 60,
            pending_backlog=500,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._seq = itertools.count(1)
        self._last_claim_at: datetime | None = None

        self.jobs: dict[str, JobRecord] = {}
        self.articles: dict[str, ArticleRecord] = {}
        self.revisions: dict[str, list[ArticleRevisionRecord]] = defaultdict(list)
        self.review_events: list[ReviewEventRecord] = []
        self.qa_templates: dict[str, QaTemplateRecord] = {}
        self.qa_results: list[QaResultRecord] = []
        self.approval_policies: dict[str, ApprovalPolicyRecord] = {}
        self.idempotency_keys: dict[str, IdempotencyRecord] = {}
        self.machine_credentials: dict[str, list[MachineCredentialRecord]] = defaultdict(list)

    def _now(self) -> datetime:
        return self._clock()

    async def close(self) -> None:
        return None

    async def health(self) -> dict[str, Any]:
        return {"backend": "memory", "pool": None}

    # machine credentials

    def register_machine_credential(self, *, module_id: str, api_key: str, scopes: Iterable[str]) -> None:
        self.machine_credentials[module_id].append(
            MachineCredentialRecord(
                module_db_id=str(uuid4()),
                module_id=module_id,
                scopes=sorted(set(scopes)),
                key_hash=hash_api_key(api_key),
            )
        )

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        return list(self.machine_credentials.get(module_id, []))

    # jobs

    async def enqueue_job(self, job: JobCreate) -> JobRecord:
        async with self._lock:
            return copy.deepcopy(self._insert_job(job, now=self._now()))

    async def enqueue_jobs(self, jobs: Iterable[JobCreate]) -> list[JobRecord]:
        jobs = list(jobs)
        async with self._lock:
            now = self._now()
            for job in jobs:
                self._check_job_create(job)
            return [copy.deepcopy(self._insert_job(job, now=now)) for job in jobs]

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(job)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobRecord]:
        rows = [
            job
            for job in self.jobs.values()
            if (status is None or job.status == status) and (job_type is None or job.job_type == job_type)
        ]
        if status == JobStatus.PENDING:
            rows.sort(key=claim_sort_key)
        else:
            rows.sort(key=lambda job: job.seq, reverse=True)
        return [copy.deepcopy(job) for job in rows[offset : offset + limit]]

    async def has_active_job(
        self,
        job_type: JobType,
        *,
        article_id: str | None = None,
        site_id: str | None = None,
    ) -> bool:
        return self._has_active_job(job_type, article_id=article_id, site_id=site_id, pending_only=False)

    async def claim_next_job(
        self,
        *,
        worker_id: str,
        lease_seconds: int,
        job_types: Iterable[JobType] | None = None,
    ) -> JobRecord | None:
        job_types = list(job_types) if job_types is not None else None
        async with self._lock:
            now = self._now()
            locked_until = lease_deadline(now, lease_seconds)
            eligible = [job for job in self.jobs.values() if is_claimable(job, now=now, job_types=job_types)]
            if not eligible:
                return None
            job = min(eligible, key=claim_sort_key)
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.locked_until = locked_until
            job.locked_by = worker_id
            job.lock_token = str(uuid4())
            job.started_at = now
            self._last_claim_at = now
            return copy.deepcopy(job)

    async def complete_job(
        self,
        job_id: str,
        *,
        lock_token: str,
        result: dict[str, Any] | None = None,
        article_changes: ArticleChanges | None = None,
        follow_on: Iterable[FollowOnJob] = (),
    ) -> JobCompletion:
        """Complete a claimed job.

        Article stages also enqueue the next stage, or move the article to review
        when the chain is done, in the same step. Stage output for an archived
        article is dropped and the chain stops there.
        """
        async with self._lock:
            now = self._now()
            job = self._require_job(job_id)
            skipped = self._ownership_problem(job, lock_token)
            if skipped:
                logger.info("job completion ignored job_id=%s reason=%s", job_id, skipped)
                return JobCompletion(job=copy.deepcopy(job), applied=False, reason=skipped)

            article = self.articles.get(job.article_id) if job.article_id else None
            next_stage, ready_for_review = stage_continuation(job)
            follow_on = list(follow_on)
            reason = None
            if article is not None and article.status in STAGE_LOCKED_STATUSES:
                logger.info("stage output dropped job_id=%s article_id=%s reason=article_archived", job_id, article.id)
                article_changes, next_stage, ready_for_review = None, None, False
                reason = "article_archived"
            if article is not None and article_changes is not None:
                revision = article.revision
                self._apply_changes(article, article_changes, actor=Actor.system(), now=now)
                if article.revision != revision:
                    for plan in plan_stage_revert(article):
                        self._apply_transition(article, plan, actor=Actor.system(), now=now)
            if next_stage is not None:
                follow_on.append(FollowOnJob(job=next_stage))

            follow_on_ids: list[str] = []
            for item in follow_on:
                follow_on_id = self._insert_follow_on(item, now=now)
                if follow_on_id is not None:
                    follow_on_ids.append(follow_on_id)

            job.status = JobStatus.COMPLETED
            job.result = result
            job.completed_at = now
            job.error_message = None
            self._release_lease(job)

            if article is not None and ready_for_review:
                for plan in plan_pipeline_review(article):
                    self._apply_transition(article, plan, actor=Actor.system(), now=now)

            return JobCompletion(
                job=copy.deepcopy(job),
                applied=True,
                reason=reason,
                follow_on_job_ids=follow_on_ids,
                article_status=article.status if article is not None else None,
            )

    async def fail_job(
        self,
        job_id: str,
        *,
        lock_token: str,
        error: str,
        permanent: bool = False,
    ) -> JobCompletion:
        async with self._lock:
            now = self._now()
            job = self._require_job(job_id)
            skipped = self._ownership_problem(job, lock_token)
            if skipped:
                logger.info("job failure ignored job_id=%s reason=%s", job_id, skipped)
                return JobCompletion(job=copy.deepcopy(job), applied=False, reason=skipped)

            self._release_lease(job)
            if not permanent and job.attempts < job.max_attempts:
                delay = compute_retry_delay_seconds(
                    attempt=job.attempts,
                    base_seconds=self.job_retry_base_seconds,
                    max_seconds=self.job_retry_max_seconds,
                )
                job.status = JobStatus.PENDING
                job.scheduled_for = now + timedelta(seconds=delay)
                job.error_message = retry_message(attempt=job.attempts, max_attempts=job.max_attempts, error=error)
                return JobCompletion(job=copy.deepcopy(job), applied=True)

            article_status = self._fail_terminally(job, error, now=now)
            return JobCompletion(job=copy.deepcopy(job), applied=True, article_status=article_status)

    async def cancel_job(self, job_id: str) -> JobRecord:
        async with self._lock:
            job = self._require_job(job_id)
            if job.status not in CANCELLABLE_JOB_STATUSES:
                raise RepositoryConflictError(f"cannot cancel job in status {job.status.value}")
            job.status = JobStatus.CANCELLED
            job.completed_at = self._now()
            self._release_lease(job)
            return copy.deepcopy(job)

    async def expire_exhausted_leases(self, *, limit: int = 100) -> int:
        async with self._lock:
            now = self._now()
            expired = sorted(
                (job for job in self.jobs.values() if is_lease_exhausted(job, now=now)),
                key=lambda job: job.locked_until,
            )[:limit]
            for job in expired:
                self._release_lease(job)
                self._fail_terminally(job, LEASE_EXHAUSTED_MESSAGE, now=now)
            return len(expired)

    async def retry_failed_jobs(self, *, limit: int = 100) -> int:
        async with self._lock:
            now = self._now()
            failed = sorted(
                (job for job in self.jobs.values() if job.status == JobStatus.FAILED),
                key=lambda job: (job.completed_at or job.created_at, job.seq),
            )[:limit]
            for job in failed:
                job.status = JobStatus.PENDING
                job.attempts = 0
                job.error_message = None
                job.completed_at = None
                job.scheduled_for = now
            return len(failed)

    async def purge_old_jobs(self, *, older_than_days: int) -> int:
        async with self._lock:
            cutoff = self._now() - timedelta(days=older_than_days)
            doomed = [
                job_id
                for job_id, job in self.jobs.items()
                if job.status in PURGEABLE_JOB_STATUSES and job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in doomed:
                del self.jobs[job_id]
            return len(doomed)

    async def queue_stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status.value] += 1
        return counts

    async def queue_health(self) -> dict[str, Any]:
        now = self._now()
        window_start = now - timedelta(hours=24)
        stats = await self.queue_stats()
        due = [
            job.scheduled_for or job.created_at
            for job in self.jobs.values()
            if job.status == JobStatus.PENDING and (job.scheduled_for or job.created_at) <= now
        ]
        oldest_pending_age = (now - min(due)).total_seconds() if due else None
        finished = [job for job in self.jobs.values() if job.completed_at is not None and job.completed_at >= window_start]
        completed = [job for job in finished if job.status == JobStatus.COMPLETED]
        failed = [job for job in finished if job.status == JobStatus.FAILED]
        durations = [
            (job.completed_at - job.started_at).total_seconds() * 1000.0
            for job in completed
            if job.started_at is not None
        ]
        error_rate = compute_error_rate_pct(failed=len(failed), completed=len(completed))
        seconds_since_last_claim = (now - self._last_claim_at).total_seconds() if self._last_claim_at else None
        return {
            "stats": stats,
            "oldest_pending_age_seconds": oldest_pending_age,
            "avg_processing_ms": round(sum(durations) / len(durations), 2) if durations else None,
            "throughput_per_hour": round(len(completed) / 24.0, 2),
            "error_rate_pct": error_rate,
            "seconds_since_last_claim": seconds_since_last_claim,
            "alerts": build_queue_slo_alerts(
                oldest_pending_age_seconds=oldest_pending_age,
                error_rate_pct=error_rate,
                pending_count=stats[JobStatus.PENDING.value],
                seconds_since_last_claim=seconds_since_last_claim,
                thresholds=self.slo_thresholds,
            ),
            "pool": None,
        }

    # articles

    async def create_article(
        self,
        data: ArticleCreate,
        *,
        actor: Actor,
        first_stage: JobType | None = JobType.RESEARCH,
        priority: int = 0,
    ) -> tuple[ArticleRecord, JobRecord | None]:
        if not role_at_least(actor.role, ReviewerRole.EDITOR):
            raise PolicyViolationError("required_role", "creating articles requires role editor or higher")
        if first_stage is not None and first_stage not in ARTICLE_STAGE_CHAIN:
            raise RepositoryValidationError(f"{first_stage.value} is not an article stage")
        async with self._lock:
            now = self._now()
            article = self._insert_article(
                ArticleSeed(
                    site_id=data.site_id,
                    title=data.title,
                    slug=data.slug or slugify(data.title),
                    target_keyword=data.target_keyword,
                    content_type=data.content_type,
                    risk_level=data.risk_level,
                ),
                status=ArticleStatus.GENERATING if first_stage is not None else ArticleStatus.DRAFT,
                now=now,
            )
            job: JobRecord | None = None
            if first_stage is None:
                self._append_event(build_event(article, ReviewEventType.CREATED, actor=actor, now=now))
            else:
                job = self._insert_job(article_stage_job(article, first_stage, priority=priority), now=now)
            return copy.deepcopy(article), copy.deepcopy(job)

    async def get_article(self, article_id: str) -> ArticleRecord:
        return copy.deepcopy(self._require_article(article_id))

    async def edit_article(self, article_id: str, changes: ArticleChanges, *, actor: Actor) -> ArticleRecord:
        async with self._lock:
            now = self._now()
            article = self._require_article(article_id)
            check_editable(
                article,
                actor=actor,
                changes_classification=changes.risk_level is not None or changes.content_type is not None,
            )
            if changes.slug is not None and changes.slug != article.slug:
                self._ensure_slug_free(article.site_id, changes.slug)
            fields = self._apply_changes(article, changes, actor=actor, now=now)
            if fields:
                self._append_event(
                    build_event(
                        article,
                        ReviewEventType.EDITED,
                        actor=actor,
                        now=now,
                        rationale=changes.change_summary,
                        metadata={"fields": fields},
                    )
                )
            return copy.deepcopy(article)

    async def transition_article(
        self,
        article_id: str,
        action: ReviewAction,
        *,
        actor: Actor,
        rationale: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> TransitionResult:
        async with self._lock:
            now = self._now()
            article = self._require_article(article_id)
            previous = article.status
            plans = plan_transition(
                article,
                action,
                actor=actor,
                state=self._review_state(article),
                rationale=rationale,
                details=details,
            )
            events = [self._apply_transition(article, plan, actor=actor, now=now) for plan in plans]
            deploy_job_id = None
            if article.status == ArticleStatus.PUBLISHED:
                deploy_job_id = self._enqueue_site_deploy(article, now=now)
            return TransitionResult(
                article=copy.deepcopy(article),
                previous_status=previous,
                event=copy.deepcopy(events[0]),
                auto_published=len(events) > 1,
                deploy_job_id=deploy_job_id,
            )

    async def add_comment(self, article_id: str, *, actor: Actor, body: str) -> ReviewEventRecord:
        check_can_comment(actor)
        text = (body or "").strip()
        if not text:
            raise RepositoryValidationError("comment body must be non-empty")
        async with self._lock:
            article = self._require_article(article_id)
            event = build_event(article, ReviewEventType.COMMENT, actor=actor, now=self._now(), rationale=text)
            self._append_event(event)
            return copy.deepcopy(event)

    async def record_expert_signoff(
        self,
        article_id: str,
        *,
        actor: Actor,
        rationale: str | None = None,
        credentials: str | None = None,
    ) -> ReviewEventRecord:
        async with self._lock:
            article = self._require_article(article_id)
            check_expert_signoff(article, actor=actor)
            event = build_event(
                article,
                ReviewEventType.EXPERT_SIGNED,
                actor=actor,
                now=self._now(),
                rationale=(rationale or "").strip() or None,
                metadata={"credentials": credentials} if credentials else {},
            )
            self._append_event(event)
            return copy.deepcopy(event)

    async def list_review_events(self, article_id: str, *, limit: int = 100, offset: int = 0) -> list[ReviewEventRecord]:
        self._require_article(article_id)
        rows = [event for event in self.review_events if event.article_id == article_id]
        return [copy.deepcopy(event) for event in rows[offset : offset + limit]]

    async def list_revisions(self, article_id: str) -> list[ArticleRevisionRecord]:
        self._require_article(article_id)
        return [copy.deepcopy(revision) for revision in self.revisions.get(article_id, [])]

    async def review_readiness(self, article_id: str) -> dict[str, Any]:
        article = self._require_article(article_id)
        return check_guards(article, self._review_state(article))

    # approval policies

    async def list_approval_policies(self) -> list[ApprovalPolicyRecord]:
        return [copy.deepcopy(policy) for policy in sorted(self.approval_policies.values(), key=lambda row: row.id)]

    async def upsert_approval_policy(
        self,
        *,
        risk_level: RiskLevel,
        required_role: ReviewerRole,
        requires_qa_checklist: bool = True,
        requires_expert_signoff: bool = False,
        auto_publish: bool = False,
        site_id: str | None = None,
        content_type: ContentType | None = None,
    ) -> ApprovalPolicyRecord:
        if required_role not in POLICY_REVIEWER_ROLES:
            raise RepositoryValidationError(f"required_role must be one of {sorted(role.value for role in POLICY_REVIEWER_ROLES)}")
        async with self._lock:
            now = self._now()
            existing = next(
                (
                    policy
                    for policy in self.approval_policies.values()
                    if policy.site_id == site_id and policy.content_type == content_type and policy.risk_level == risk_level
                ),
                None,
            )
            if existing is None:
                existing = ApprovalPolicyRecord(
                    id=str(uuid4()),
                    risk_level=risk_level,
                    required_role=required_role,
                    requires_qa_checklist=requires_qa_checklist,
                    requires_expert_signoff=requires_expert_signoff,
                    auto_publish=auto_publish,
                    site_id=site_id,
                    content_type=content_type,
                    created_at=now,
                    updated_at=now,
                )
                self.approval_policies[existing.id] = existing
            else:
                existing.required_role = required_role
                existing.requires_qa_checklist = requires_qa_checklist
                existing.requires_expert_signoff = requires_expert_signoff
                existing.auto_publish = auto_publish
                existing.updated_at = now
            return copy.deepcopy(existing)

    async def resolve_article_policy(self, article_id: str) -> ResolvedPolicy:
        return self._resolve_policy(self._require_article(article_id))

    # QA checklists

    async def list_qa_templates(self) -> list[QaTemplateRecord]:
        return [copy.deepcopy(template) for template in sorted(self.qa_templates.values(), key=lambda row: row.id)]

    async def upsert_qa_template(
        self,
        template_id: str,
        *,
        name: str,
        items: Iterable[dict[str, Any]],
        content_type: ContentType | None = None,
        risk_level: RiskLevel | None = None,
    ) -> QaTemplateRecord:
        if template_id.startswith(f"{DEFAULT_TEMPLATE_PREFIX}:"):
            raise RepositoryValidationError("built-in checklist templates cannot be overwritten")
        parsed_items = parse_checklist_items(items)
        async with self._lock:
            now = self._now()
            existing = self.qa_templates.get(template_id)
            template = QaTemplateRecord(
                id=template_id,
                name=name,
                items=parsed_items,
                content_type=content_type,
                risk_level=risk_level,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.qa_templates[template_id] = template
            return copy.deepcopy(template)

    async def get_article_checklist(self, article_id: str) -> tuple[QaTemplateRecord, list[QaResultRecord]]:
        article = self._require_article(article_id)
        template = select_template(
            content_type=article.content_type,
            risk_level=article.risk_level,
            templates=self.qa_templates.values(),
        )
        results = [result for result in self.qa_results if result.article_id == article_id]
        return copy.deepcopy(template), [copy.deepcopy(result) for result in reversed(results)]

    async def submit_qa_result(
        self,
        article_id: str,
        *,
        reviewer: Actor,
        results: dict[str, dict[str, Any]],
        template_id: str | None = None,
        evidence: dict[str, Any] | None = None,
    ) -> QaResultRecord:
        if not role_at_least(reviewer.role, ReviewerRole.REVIEWER):
            raise PolicyViolationError("required_role", "QA checklists require role reviewer or higher")
        async with self._lock:
            now = self._now()
            article = self._require_article(article_id)
            if article.status != ArticleStatus.REVIEW:
                raise RepositoryConflictError(f"cannot submit QA for article in status {article.status.value}")
            template = self._lookup_template(article, template_id)
            evaluation = evaluate_submission(
                template,
                results,
                evidence,
                require_all_required_checked=self.qa_require_all_required_checked,
            )
            record = QaResultRecord(
                id=str(uuid4()),
                article_id=article.id,
                template_id=template.id,
                reviewer_id=reviewer.actor_id,
                revision=article.revision,
                results=evaluation.results,
                all_passed=evaluation.all_passed,
                test_run_id=evaluation.test_run_id,
                harness_version=evaluation.harness_version,
                completed_at=now,
            )
            self.qa_results.append(record)
            self._append_event(
                build_event(
                    article,
                    ReviewEventType.QA_COMPLETED,
                    actor=reviewer,
                    now=now,
                    metadata={
                        "qa_result_id": record.id,
                        "template_id": template.id,
                        "all_passed": record.all_passed,
                    },
                )
            )
            return copy.deepcopy(record)

    # idempotency

    async def begin_idempotent(self, key: str, *, method: str, path: str) -> Replay | Proceed:
        validate_idempotency_key(key)
        async with self._lock:
            now = self._now()
            replay = decide_existing(self.idempotency_keys.get(key), method=method, path=path, now=now)
            if replay is not None:
                return replay
            self.idempotency_keys[key] = started_record(
                key=key,
                method=method,
                path=path,
                now=now,
                ttl_seconds=self.idempotency_in_flight_ttl_seconds,
            )
            return Proceed(key=key, method=method, path=path)

    async def complete_idempotent(self, token: Proceed, *, status_code: int, body: str) -> None:
        async with self._lock:
            record = self.idempotency_keys.get(token.key)
            if record is None:
                return
            now = self._now()
            record.state = STATE_COMPLETED
            record.status_code = status_code
            record.response_body = body
            record.expires_at = now + timedelta(seconds=self.idempotency_ttl_seconds)

    async def release_idempotent(self, token: Proceed) -> None:
        async with self._lock:
            record = self.idempotency_keys.get(token.key)
            if record is not None and record.state != STATE_COMPLETED:
                del self.idempotency_keys[token.key]

    async def purge_expired_idempotency_keys(self) -> int:
        async with self._lock:
            now = self._now()
            expired = [key for key, record in self.idempotency_keys.items() if record.expires_at <= now]
            for key in expired:
                del self.idempotency_keys[key]
            return len(expired)

    # internals; callers hold self._lock

    def _job_max_attempts(self, data: JobCreate) -> int:
        return data.max_attempts if data.max_attempts is not None else self.job_max_attempts

    def _check_job_create(self, data: JobCreate) -> None:
        check_job_create(data, max_attempts=self._job_max_attempts(data))
        if data.article_id and data.article_id not in self.articles:
            raise RepositoryNotFoundError("article not found")

    def _insert_job(self, data: JobCreate, *, now: datetime) -> JobRecord:
        self._check_job_create(data)
        job = JobRecord(
            id=str(uuid4()),
            job_type=JobType(data.job_type),
            status=JobStatus.PENDING,
            site_id=data.site_id,
            article_id=data.article_id,
            keyword_id=data.keyword_id,
            payload=copy.deepcopy(data.payload),
            priority=data.priority,
            max_attempts=self._job_max_attempts(data),
            created_at=now,
            scheduled_for=data.scheduled_for or now,
            seq=next(self._seq),
        )
        self.jobs[job.id] = job
        return job

    def _insert_follow_on(self, item: FollowOnJob, *, now: datetime) -> str | None:
        job = item.job
        if item.seed is not None:
            if self._slug_taken(item.seed.site_id, item.seed.slug):
                logger.info("article seed skipped site_id=%s slug=%s reason=slug_taken", item.seed.site_id, item.seed.slug)
                return None
            article = self._insert_article(item.seed, status=ArticleStatus.GENERATING, now=now)
            job = article_stage_job(article, job.job_type, priority=job.priority, options=job.payload.get("options"))
        if item.skip_if_active and self._has_active_job(
            job.job_type, article_id=job.article_id, site_id=job.site_id, pending_only=False
        ):
            return None
        return self._insert_job(job, now=now).id

    def _insert_article(self, seed: ArticleSeed, *, status: ArticleStatus, now: datetime) -> ArticleRecord:
        self._ensure_slug_free(seed.site_id, seed.slug)
        article = ArticleRecord(
            id=str(uuid4()),
            site_id=seed.site_id,
            title=seed.title,
            slug=seed.slug,
            status=status,
            content_type=seed.content_type,
            risk_level=seed.risk_level,
            target_keyword=seed.target_keyword,
            created_at=now,
            updated_at=now,
        )
        self.articles[article.id] = article
        return article

    def _slug_taken(self, site_id: str, slug: str) -> bool:
        return any(article.site_id == site_id and article.slug == slug for article in self.articles.values())

    def _ensure_slug_free(self, site_id: str, slug: str) -> None:
        if self._slug_taken(site_id, slug):
            raise RepositoryConflictError(f"slug already exists for site: {slug}")

    def _has_active_job(
        self,
        job_type: JobType,
        *,
        article_id: str | None,
        site_id: str | None,
        pending_only: bool,
    ) -> bool:
        statuses = {JobStatus.PENDING} if pending_only else {JobStatus.PENDING, JobStatus.PROCESSING}
        return any(
            job.job_type == job_type
            and job.status in statuses
            and job.article_id == article_id
            and (site_id is None or job.site_id == site_id)
            for job in self.jobs.values()
        )

    def _enqueue_site_deploy(self, article: ArticleRecord, *, now: datetime) -> str | None:
        if self._has_active_job(JobType.DEPLOY, article_id=None, site_id=article.site_id, pending_only=True):
            return None
        job = self._insert_job(
            JobCreate(
                job_type=JobType.DEPLOY,
                site_id=article.site_id,
                payload={"site_id": article.site_id, "trigger": "publish", "article_id": article.id},
            ),
            now=now,
        )
        return job.id

    def _require_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    def _require_article(self, article_id: str) -> ArticleRecord:
        article = self.articles.get(article_id)
        if article is None:
            raise RepositoryNotFoundError("article not found")
        return article

    @staticmethod
    def _ownership_problem(job: JobRecord, lock_token: str) -> str | None:
        if job.status == JobStatus.CANCELLED:
            return "cancelled"
        if job.status != JobStatus.PROCESSING or job.lock_token != lock_token:
            return "lease_lost"
        return None

    @staticmethod
    def _release_lease(job: JobRecord) -> None:
        job.locked_until = None
        job.locked_by = None
        job.lock_token = None

    def _fail_terminally(self, job: JobRecord, error: str, *, now: datetime) -> ArticleStatus | None:
        job.status = JobStatus.FAILED
        job.error_message = error
        job.completed_at = now
        if job.job_type not in ARTICLE_STAGE_CHAIN or not job.article_id:
            return None
        article = self.articles.get(job.article_id)
        if article is None:
            return None
        for plan in plan_pipeline_failure(article, job_type=job.job_type.value, error=error):
            self._apply_transition(article, plan, actor=Actor.system(), now=now)
        return article.status

    def _apply_changes(self, article: ArticleRecord, changes: ArticleChanges, *, actor: Actor, now: datetime) -> list[str]:
        fields = apply_article_changes(article, changes, now=now)
        if any(name in fields for name in ("title", "body", "meta_description")):
            self.revisions[article.id].append(next_revision(article, changes, actor=actor, now=now))
        return fields

    def _apply_transition(
        self,
        article: ArticleRecord,
        plan: TransitionPlan,
        *,
        actor: Actor,
        now: datetime,
    ) -> ReviewEventRecord:
        event = apply_plan(article, plan, actor=actor, now=now)
        self._append_event(event)
        return event

    def _append_event(self, event: ReviewEventRecord) -> None:
        self.review_events.append(event)

    def _resolve_policy(self, article: ArticleRecord) -> ResolvedPolicy:
        return resolve_policy(
            site_id=article.site_id,
            content_type=article.content_type,
            risk_level=article.risk_level,
            policies=self.approval_policies.values(),
        )

    def _review_state(self, article: ArticleRecord) -> ReviewState:
        results = [
            result
            for result in self.qa_results
            if result.article_id == article.id and result.revision == article.revision
        ]
        latest_qa = results[-1] if results else None
        expert_signed = any(
            event.article_id == article.id
            and event.event_type == ReviewEventType.EXPERT_SIGNED
            and event.revision == article.revision
            for event in self.review_events
        )
        return ReviewState(policy=self._resolve_policy(article), latest_qa=latest_qa, expert_signed=expert_signed)

    def _lookup_template(self, article: ArticleRecord, template_id: str | None) -> QaTemplateRecord:
        if template_id is None:
            return select_template(
                content_type=article.content_type,
                risk_level=article.risk_level,
                templates=self.qa_templates.values(),
            )
        if template_id.startswith(f"{DEFAULT_TEMPLATE_PREFIX}:"):
            try:
                return default_checklist(RiskLevel(template_id.split(":", 1)[1]))
            except ValueError as exc:
                raise RepositoryNotFoundError("qa template not found") from exc
        template = self.qa_templates.get(template_id)
        if template is None:
            raise RepositoryNotFoundError("qa template not found")
        return template
