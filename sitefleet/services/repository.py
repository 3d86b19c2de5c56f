from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, AsyncIterator, Iterable
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from sitefleet.core.config import get_settings
from sitefleet.core.types import (
    ARTICLE_STAGE_CHAIN,
    ArticleStatus,
    ContentType,
    JobStatus,
    JobType,
    ReviewAction,
    ReviewerRole,
    ReviewEventType,
    RevisionChangeType,
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
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from sitefleet.services.idempotency import (
    STATE_COMPLETED,
    STATE_STARTED,
    Proceed,
    Replay,
    decide_existing,
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
    LEASE_EXHAUSTED_MESSAGE,
    QueueSloThresholds,
    article_stage_job,
    build_queue_slo_alerts,
    check_job_create,
    compute_error_rate_pct,
    compute_retry_delay_seconds,
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
from sitefleet.services.store import InMemoryStore
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

JOB_COLUMNS = """
  id::text as id,
  job_type::text as job_type,
  status::text as status,
  site_id,
  article_id::text as article_id,
  keyword_id,
  payload,
  result,
  priority,
  attempts,
  max_attempts,
  error_message,
  created_at,
  started_at,
  completed_at,
  scheduled_for,
  locked_until,
  locked_by,
  lock_token::text as lock_token,
  seq
"""

ARTICLE_COLUMNS = """
  id::text as id,
  site_id,
  title,
  slug,
  status::text as status,
  content_type,
  risk_level,
  target_keyword,
  body,
  outline,
  research,
  meta_description,
  content_fingerprint,
  revision,
  published_at,
  published_by,
  last_reviewed_at,
  last_reviewed_by,
  review_requested_at,
  created_at,
  updated_at
"""

EVENT_COLUMNS = """
  id::text as id,
  article_id::text as article_id,
  revision,
  actor_id,
  actor_role,
  event_type,
  reason_code,
  rationale,
  metadata,
  created_at
"""

QA_RESULT_COLUMNS = """
  id::text as id,
  article_id::text as article_id,
  template_id,
  reviewer_id,
  revision,
  results,
  all_passed,
  test_run_id,
  harness_version,
  completed_at
"""

POLICY_COLUMNS = """
  id::text as id,
  site_id,
  content_type,
  risk_level,
  required_role,
  requires_qa_checklist,
  requires_expert_signoff,
  auto_publish,
  created_at,
  updated_at
"""

POOL_SATURATION_RESET_RATIO = 0.6


@dataclass(slots=True)
class PoolMetrics:
    """Connection pool counters, updated by the repository's acquire wrapper."""

    max_size: int
    warning_ratio: float = 0.8
    acquired_total: int = 0
    in_use: int = 0
    peak_in_use: int = 0
    acquire_wait_ms_total: float = 0.0
    acquire_failures: int = 0
    saturation_warnings: int = 0
    saturated: bool = False

    def on_acquire(self, *, wait_ms: float) -> None:
        self.acquired_total += 1
        self.in_use += 1
        self.peak_in_use = max(self.peak_in_use, self.in_use)
        self.acquire_wait_ms_total += wait_ms
        utilization = self.utilization()
        if not self.saturated and utilization >= self.warning_ratio:
            self.saturated = True
            self.saturation_warnings += 1
            logger.warning(
                "database pool saturation in_use=%s max_size=%s utilization=%.2f",
                self.in_use,
                self.max_size,
                utilization,
            )

    def on_release(self) -> None:
        self.in_use = max(0, self.in_use - 1)
        if self.saturated and self.utilization() < POOL_SATURATION_RESET_RATIO:
            self.saturated = False

    def on_failure(self) -> None:
        self.acquire_failures += 1

    def utilization(self) -> float:
        if self.max_size <= 0:
            return 0.0
        return self.in_use / self.max_size

    def snapshot(self) -> dict[str, Any]:
        return {
            "max_size": self.max_size,
            "in_use": self.in_use,
            "peak_in_use": self.peak_in_use,
            "utilization": round(self.utilization(), 3),
            "acquired_total": self.acquired_total,
            "avg_acquire_wait_ms": round(self.acquire_wait_ms_total / self.acquired_total, 3)
            if self.acquired_total
            else 0.0,
            "acquire_failures": self.acquire_failures,
            "saturation_warnings": self.saturation_warnings,
            "saturated": self.saturated,
        }


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
        qa_require_all_required_checked: bool = True,
        idempotency_ttl_seconds: int = 24 * 60 * 60,
        idempotency_in_flight_ttl_seconds: int = 5 * 60,
        pool_warning_ratio: float = 0.8,
        slo_thresholds: QueueSloThresholds | None = None,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
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
        self.pool_metrics = PoolMetrics(max_size=max_pool_size, warning_ratio=pool_warning_ratio)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def health(self) -> dict[str, Any]:
        async with self._connection() as conn:
            await conn.fetchval("select 1")
        return {"backend": "postgres", "pool": self.pool_metrics.snapshot()}

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select
                  m.id::text as module_db_id,
                  m.module_id,
                  m.scopes,
                  mc.key_hash
                from modules m
                join module_credentials mc on mc.module_id = m.id
                where m.module_id = $1
                  and m.enabled = true
                  and mc.is_active = true
                  and mc.revoked_at is null
                  and (mc.expires_at is null or mc.expires_at > now())
                """,
                module_id,
            )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    # jobs

    async def enqueue_job(self, job: JobCreate) -> JobRecord:
        async with self._connection() as conn:
            return await self._insert_job(conn, job)

    async def enqueue_jobs(self, jobs: Iterable[JobCreate]) -> list[JobRecord]:
        jobs = list(jobs)
        for job in jobs:
            check_job_create(job, max_attempts=self._job_max_attempts(job))
        async with self._connection() as conn:
            async with conn.transaction():
                return [await self._insert_job(conn, job) for job in jobs]

    async def get_job(self, job_id: str) -> JobRecord:
        _require_uuid(job_id, "job")
        async with self._connection() as conn:
            row = await conn.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_from_row(row)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobRecord]:
        order_by = (
            "priority desc, scheduled_for asc, created_at asc, seq asc"
            if status == JobStatus.PENDING
            else "seq desc"
        )
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {JOB_COLUMNS}
                from jobs
                where ($1::text is null or status::text = $1)
                  and ($2::text is null or job_type::text = $2)
                order by {order_by}
                limit $3 offset $4
                """,
                status.value if status else None,
                job_type.value if job_type else None,
                max(1, min(limit, 500)),
                max(0, offset),
            )
        return [self._job_from_row(row) for row in rows]

    async def has_active_job(
        self,
        job_type: JobType,
        *,
        article_id: str | None = None,
        site_id: str | None = None,
    ) -> bool:
        async with self._connection() as conn:
            return await self._has_active_job(conn, job_type, article_id=article_id, site_id=site_id)

    async def claim_next_job(
        self,
        *,
        worker_id: str,
        lease_seconds: int,
        job_types: Iterable[JobType] | None = None,
    ) -> JobRecord | None:
        if lease_seconds <= 0:
            raise RepositoryValidationError("lease_seconds must be positive")
        type_filter = [job_type.value for job_type in job_types] if job_types is not None else None

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                update jobs j
                set
                  status = 'processing',
                  attempts = j.attempts + 1,
                  locked_until = now() + ($1::int * interval '1 second'),
                  locked_by = $2,
                  lock_token = gen_random_uuid(),
                  started_at = now()
                from (
                  select id as picked_id
                  from jobs
                  where (
                      (
                        status = 'pending'
                        and scheduled_for <= now()
                        and (locked_until is null or locked_until <= now())
                      )
                      or (
                        status = 'processing'
                        and locked_until is not null
                        and locked_until <= now()
                        and attempts < max_attempts
                      )
                    )
                    and ($3::text[] is null or job_type::text = any($3::text[]))
                  order by priority desc, scheduled_for asc, created_at asc, seq asc
                  limit 1
                  for update skip locked
                ) picked
                where j.id = picked.picked_id
                returning {JOB_COLUMNS}
                """,
                lease_seconds,
                worker_id,
                type_filter,
            )
        if not row:
            return None
        return self._job_from_row(row)

    async def complete_job(
        self,
        job_id: str,
        *,
        lock_token: str,
        result: dict[str, Any] | None = None,
        article_changes: ArticleChanges | None = None,
        follow_on: Iterable[FollowOnJob] = (),
    ) -> JobCompletion:
        _require_uuid(job_id, "job")
        async with self._connection() as conn:
            async with conn.transaction():
                job = await self._lock_job(conn, job_id)
                skipped = _ownership_problem(job, lock_token)
                if skipped:
                    logger.info("job completion ignored job_id=%s reason=%s", job_id, skipped)
                    return JobCompletion(job=job, applied=False, reason=skipped)

                now = await self._db_now(conn)
                article = await self._lock_article(conn, job.article_id) if job.article_id else None
                next_stage, ready_for_review = stage_continuation(job)
                follow_on = list(follow_on)
                reason = None
                if article is not None and article.status in STAGE_LOCKED_STATUSES:
                    logger.info(
                        "stage output dropped job_id=%s article_id=%s reason=article_archived", job_id, article.id
                    )
                    article_changes, next_stage, ready_for_review = None, None, False
                    reason = "article_archived"
                if article is not None and article_changes is not None:
                    revision = article.revision
                    await self._apply_changes(conn, article, article_changes, actor=Actor.system(), now=now)
                    if article.revision != revision:
                        for plan in plan_stage_revert(article):
                            await self._apply_transition(conn, article, plan, actor=Actor.system(), now=now)
                        await self._write_article(conn, article)
                if next_stage is not None:
                    follow_on.append(FollowOnJob(job=next_stage))

                follow_on_ids: list[str] = []
                for item in follow_on:
                    follow_on_id = await self._insert_follow_on(conn, item)
                    if follow_on_id is not None:
                        follow_on_ids.append(follow_on_id)

                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = 'completed',
                      result = $2::jsonb,
                      completed_at = now(),
                      error_message = null,
                      locked_until = null,
                      locked_by = null,
                      lock_token = null
                    where id = $1::uuid
                    returning {JOB_COLUMNS}
                    """,
                    job_id,
                    json.dumps(result) if result is not None else None,
                )

                if article is not None and ready_for_review:
                    for plan in plan_pipeline_review(article):
                        await self._apply_transition(conn, article, plan, actor=Actor.system(), now=now)
                    await self._write_article(conn, article)

                return JobCompletion(
                    job=self._job_from_row(row),
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
        _require_uuid(job_id, "job")
        async with self._connection() as conn:
            async with conn.transaction():
                job = await self._lock_job(conn, job_id)
                skipped = _ownership_problem(job, lock_token)
                if skipped:
                    logger.info("job failure ignored job_id=%s reason=%s", job_id, skipped)
                    return JobCompletion(job=job, applied=False, reason=skipped)

                if not permanent and job.attempts < job.max_attempts:
                    retry_delay_seconds = compute_retry_delay_seconds(
                        attempt=job.attempts,
                        base_seconds=self.job_retry_base_seconds,
                        max_seconds=self.job_retry_max_seconds,
                    )
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'pending',
                          scheduled_for = now() + ($2::int * interval '1 second'),
                          error_message = $3,
                          locked_until = null,
                          locked_by = null,
                          lock_token = null
                        where id = $1::uuid
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        retry_delay_seconds,
                        retry_message(attempt=job.attempts, max_attempts=job.max_attempts, error=error),
                    )
                    return JobCompletion(job=self._job_from_row(row), applied=True)

                failed, article_status = await self._fail_terminally(conn, job, error)
                return JobCompletion(job=failed, applied=True, article_status=article_status)

    async def cancel_job(self, job_id: str) -> JobRecord:
        _require_uuid(job_id, "job")
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = 'cancelled',
                      completed_at = now(),
                      locked_until = null,
                      locked_by = null,
                      lock_token = null
                    where id = $1::uuid and status in ('pending', 'processing')
                    returning {JOB_COLUMNS}
                    """,
                    job_id,
                )
                if row:
                    return self._job_from_row(row)
                current = await conn.fetchval("select status::text from jobs where id = $1::uuid", job_id)
                if current is None:
                    raise RepositoryNotFoundError("job not found")
                raise RepositoryConflictError(f"cannot cancel job in status {current}")

    async def expire_exhausted_leases(self, *, limit: int = 100) -> int:
        bounded_limit = max(1, min(limit, 1000))
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    select {JOB_COLUMNS}
                    from jobs
                    where status = 'processing'
                      and locked_until is not null
                      and locked_until <= now()
                      and attempts >= max_attempts
                    order by locked_until asc
                    limit $1
                    for update skip locked
                    """,
                    bounded_limit,
                )
                for row in rows:
                    await self._fail_terminally(conn, self._job_from_row(row), LEASE_EXHAUSTED_MESSAGE)
                return len(rows)

    async def retry_failed_jobs(self, *, limit: int = 100) -> int:
        bounded_limit = max(1, min(limit, 1000))
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with failed as (
                      select id
                      from jobs
                      where status = 'failed'
                      order by completed_at asc nulls first, seq asc
                      limit $1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'pending',
                      attempts = 0,
                      error_message = null,
                      completed_at = null,
                      scheduled_for = now()
                    from failed f
                    where j.id = f.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def purge_old_jobs(self, *, older_than_days: int) -> int:
        if older_than_days < 0:
            raise RepositoryValidationError("older_than_days must be non-negative")
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                delete from jobs
                where status in ('completed', 'cancelled')
                  and completed_at is not null
                  and completed_at < now() - ($1::int * interval '1 day')
                returning id
                """,
                older_than_days,
            )
        return len(rows)

    async def queue_stats(self) -> dict[str, int]:
        async with self._connection() as conn:
            rows = await conn.fetch("select status::text as status, count(*) as total from jobs group by status")
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    async def queue_health(self) -> dict[str, Any]:
        stats = await self.queue_stats()
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select
                  extract(epoch from (
                    now() - min(scheduled_for) filter (where status = 'pending' and scheduled_for <= now())
                  ))::float8 as oldest_pending_age_seconds,
                  (avg(extract(epoch from (completed_at - started_at)) * 1000.0) filter (
                    where status = 'completed'
                      and started_at is not null
                      and completed_at >= now() - interval '24 hours'
                  ))::float8 as avg_processing_ms,
                  count(*) filter (
                    where status = 'completed' and completed_at >= now() - interval '24 hours'
                  ) as completed_24h,
                  count(*) filter (
                    where status = 'failed' and completed_at >= now() - interval '24 hours'
                  ) as failed_24h,
                  extract(epoch from (now() - max(started_at)))::float8 as seconds_since_last_claim
                from jobs
                """
            )
        completed_24h = int(row["completed_24h"] or 0)
        error_rate = compute_error_rate_pct(failed=int(row["failed_24h"] or 0), completed=completed_24h)
        oldest_pending_age = row["oldest_pending_age_seconds"]
        seconds_since_last_claim = row["seconds_since_last_claim"]
        avg_processing_ms = row["avg_processing_ms"]
        return {
            "stats": stats,
            "oldest_pending_age_seconds": oldest_pending_age,
            "avg_processing_ms": round(avg_processing_ms, 2) if avg_processing_ms is not None else None,
            "throughput_per_hour": round(completed_24h / 24.0, 2),
            "error_rate_pct": error_rate,
            "seconds_since_last_claim": seconds_since_last_claim,
            "alerts": build_queue_slo_alerts(
                oldest_pending_age_seconds=oldest_pending_age,
                error_rate_pct=error_rate,
                pending_count=stats[JobStatus.PENDING.value],
                seconds_since_last_claim=seconds_since_last_claim,
                thresholds=self.slo_thresholds,
            ),
            "pool": self.pool_metrics.snapshot(),
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

        seed = ArticleSeed(
            site_id=data.site_id,
            title=data.title,
            slug=data.slug or slugify(data.title),
            target_keyword=data.target_keyword,
            content_type=data.content_type,
            risk_level=data.risk_level,
        )
        status = ArticleStatus.GENERATING if first_stage is not None else ArticleStatus.DRAFT
        async with self._connection() as conn:
            async with conn.transaction():
                article = await self._insert_article(conn, seed, status=status)
                if article is None:
                    raise RepositoryConflictError(f"slug already exists for site: {seed.slug}")
                job: JobRecord | None = None
                if first_stage is None:
                    now = await self._db_now(conn)
                    await self._insert_event(conn, build_event(article, ReviewEventType.CREATED, actor=actor, now=now))
                else:
                    job = await self._insert_job(conn, article_stage_job(article, first_stage, priority=priority))
                return article, job

    async def get_article(self, article_id: str) -> ArticleRecord:
        _require_uuid(article_id, "article")
        async with self._connection() as conn:
            row = await conn.fetchrow(f"select {ARTICLE_COLUMNS} from articles where id = $1::uuid", article_id)
        if not row:
            raise RepositoryNotFoundError("article not found")
        return self._article_from_row(row)

    async def edit_article(self, article_id: str, changes: ArticleChanges, *, actor: Actor) -> ArticleRecord:
        _require_uuid(article_id, "article")
        async with self._connection() as conn:
            async with conn.transaction():
                article = await self._lock_article(conn, article_id)
                check_editable(
                    article,
                    actor=actor,
                    changes_classification=changes.risk_level is not None or changes.content_type is not None,
                )
                now = await self._db_now(conn)
                try:
                    fields = await self._apply_changes(conn, article, changes, actor=actor, now=now)
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryConflictError(f"slug already exists for site: {changes.slug}") from exc
                if fields:
                    await self._insert_event(
                        conn,
                        build_event(
                            article,
                            ReviewEventType.EDITED,
                            actor=actor,
                            now=now,
                            rationale=changes.change_summary,
                            metadata={"fields": fields},
                        ),
                    )
                return article

    async def transition_article(
        self,
        article_id: str,
        action: ReviewAction,
        *,
        actor: Actor,
        rationale: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> TransitionResult:
        _require_uuid(article_id, "article")
        async with self._connection() as conn:
            async with conn.transaction():
                # Row lock serializes competing transitions on one article.
                article = await self._lock_article(conn, article_id)
                previous = article.status
                plans = plan_transition(
                    article,
                    action,
                    actor=actor,
                    state=await self._review_state(conn, article),
                    rationale=rationale,
                    details=details,
                )
                now = await self._db_now(conn)
                events = [await self._apply_transition(conn, article, plan, actor=actor, now=now) for plan in plans]
                await self._write_article(conn, article)
                deploy_job_id = None
                if article.status == ArticleStatus.PUBLISHED:
                    deploy_job_id = await self._enqueue_site_deploy(conn, article)
                return TransitionResult(
                    article=article,
                    previous_status=previous,
                    event=events[0],
                    auto_published=len(events) > 1,
                    deploy_job_id=deploy_job_id,
                )

    async def add_comment(self, article_id: str, *, actor: Actor, body: str) -> ReviewEventRecord:
        check_can_comment(actor)
        text = (body or "").strip()
        if not text:
            raise RepositoryValidationError("comment body must be non-empty")
        _require_uuid(article_id, "article")
        async with self._connection() as conn:
            async with conn.transaction():
                article = await self._lock_article(conn, article_id)
                event = build_event(
                    article,
                    ReviewEventType.COMMENT,
                    actor=actor,
                    now=await self._db_now(conn),
                    rationale=text,
                )
                await self._insert_event(conn, event)
                return event

    async def record_expert_signoff(
        self,
        article_id: str,
        *,
        actor: Actor,
        rationale: str | None = None,
        credentials: str | None = None,
    ) -> ReviewEventRecord:
        _require_uuid(article_id, "article")
        async with self._connection() as conn:
            async with conn.transaction():
                article = await self._lock_article(conn, article_id)
                check_expert_signoff(article, actor=actor)
                event = build_event(
                    article,
                    ReviewEventType.EXPERT_SIGNED,
                    actor=actor,
                    now=await self._db_now(conn),
                    rationale=(rationale or "").strip() or None,
                    metadata={"credentials": credentials} if credentials else {},
                )
                await self._insert_event(conn, event)
                return event

    async def list_review_events(self, article_id: str, *, limit: int = 100, offset: int = 0) -> list[ReviewEventRecord]:
        await self.get_article(article_id)
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {EVENT_COLUMNS}
                from review_events
                where article_id = $1::uuid
                order by created_at asc, id asc
                limit $2 offset $3
                """,
                article_id,
                max(1, min(limit, 500)),
                max(0, offset),
            )
        return [self._event_from_row(row) for row in rows]

    async def list_revisions(self, article_id: str) -> list[ArticleRevisionRecord]:
        await self.get_article(article_id)
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select
                  id::text as id,
                  article_id::text as article_id,
                  revision_number,
                  title,
                  body,
                  meta_description,
                  content_hash,
                  word_count,
                  change_type,
                  change_summary,
                  created_by,
                  created_at
                from article_revisions
                where article_id = $1::uuid
                order by revision_number asc
                """,
                article_id,
            )
        return [
            ArticleRevisionRecord(
                id=row["id"],
                article_id=row["article_id"],
                revision_number=row["revision_number"],
                title=row["title"],
                body=row["body"],
                meta_description=row["meta_description"],
                content_hash=row["content_hash"],
                word_count=row["word_count"],
                change_type=RevisionChangeType(row["change_type"]),
                change_summary=row["change_summary"],
                created_by=row["created_by"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def review_readiness(self, article_id: str) -> dict[str, Any]:
        article = await self.get_article(article_id)
        async with self._connection() as conn:
            state = await self._review_state(conn, article)
        return check_guards(article, state)

    # approval policies

    async def list_approval_policies(self) -> list[ApprovalPolicyRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(f"select {POLICY_COLUMNS} from approval_policies order by id")
        return [self._policy_from_row(row) for row in rows]

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
            raise RepositoryValidationError(
                f"required_role must be one of {sorted(role.value for role in POLICY_REVIEWER_ROLES)}"
            )
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                insert into approval_policies (
                  site_id,
                  content_type,
                  risk_level,
                  required_role,
                  requires_qa_checklist,
                  requires_expert_signoff,
                  auto_publish
                )
                values ($1, $2, $3, $4, $5, $6, $7)
                on conflict (coalesce(site_id, ''), coalesce(content_type, ''), risk_level)
                do update set
                  required_role = excluded.required_role,
                  requires_qa_checklist = excluded.requires_qa_checklist,
                  requires_expert_signoff = excluded.requires_expert_signoff,
                  auto_publish = excluded.auto_publish,
                  updated_at = now()
                returning {POLICY_COLUMNS}
                """,
                site_id,
                content_type.value if content_type else None,
                risk_level.value,
                required_role.value,
                requires_qa_checklist,
                requires_expert_signoff,
                auto_publish,
            )
        return self._policy_from_row(row)

    async def resolve_article_policy(self, article_id: str) -> ResolvedPolicy:
        article = await self.get_article(article_id)
        async with self._connection() as conn:
            return await self._resolve_policy(conn, article)

    # QA checklists

    async def list_qa_templates(self) -> list[QaTemplateRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select id, name, content_type, risk_level, items, created_at, updated_at
                from qa_checklist_templates
                order by id
                """
            )
        return [self._template_from_row(row) for row in rows]

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
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                insert into qa_checklist_templates (id, name, content_type, risk_level, items)
                values ($1, $2, $3, $4, $5::jsonb)
                on conflict (id) do update set
                  name = excluded.name,
                  content_type = excluded.content_type,
                  risk_level = excluded.risk_level,
                  items = excluded.items,
                  updated_at = now()
                returning id, name, content_type, risk_level, items, created_at, updated_at
                """,
                template_id,
                name,
                content_type.value if content_type else None,
                risk_level.value if risk_level else None,
                json.dumps([_item_to_dict(item) for item in parsed_items]),
            )
        return self._template_from_row(row)

    async def get_article_checklist(self, article_id: str) -> tuple[QaTemplateRecord, list[QaResultRecord]]:
        article = await self.get_article(article_id)
        templates = await self.list_qa_templates()
        template = select_template(
            content_type=article.content_type,
            risk_level=article.risk_level,
            templates=templates,
        )
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {QA_RESULT_COLUMNS}
                from qa_checklist_results
                where article_id = $1::uuid
                order by completed_at desc, id desc
                """,
                article_id,
            )
        return template, [self._qa_result_from_row(row) for row in rows]

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
        _require_uuid(article_id, "article")
        async with self._connection() as conn:
            async with conn.transaction():
                article = await self._lock_article(conn, article_id)
                if article.status != ArticleStatus.REVIEW:
                    raise RepositoryConflictError(f"cannot submit QA for article in status {article.status.value}")
                template = await self._lookup_template(conn, article, template_id)
                evaluation = evaluate_submission(
                    template,
                    results,
                    evidence,
                    require_all_required_checked=self.qa_require_all_required_checked,
                )
                row = await conn.fetchrow(
                    f"""
                    insert into qa_checklist_results (
                      article_id,
                      template_id,
                      reviewer_id,
                      revision,
                      results,
                      all_passed,
                      test_run_id,
                      harness_version
                    )
                    values ($1::uuid, $2, $3, $4, $5::jsonb, $6, $7, $8)
                    returning {QA_RESULT_COLUMNS}
                    """,
                    article.id,
                    template.id,
                    reviewer.actor_id,
                    article.revision,
                    json.dumps(evaluation.results),
                    evaluation.all_passed,
                    evaluation.test_run_id,
                    evaluation.harness_version,
                )
                record = self._qa_result_from_row(row)
                await self._insert_event(
                    conn,
                    build_event(
                        article,
                        ReviewEventType.QA_COMPLETED,
                        actor=reviewer,
                        now=record.completed_at,
                        metadata={
                            "qa_result_id": record.id,
                            "template_id": template.id,
                            "all_passed": record.all_passed,
                        },
                    ),
                )
                return record

    # idempotency

    async def begin_idempotent(self, key: str, *, method: str, path: str) -> Replay | Proceed:
        validate_idempotency_key(key)
        async with self._connection() as conn:
            async with conn.transaction():
                # Serialize first sightings of the same key.
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", key)
                row = await conn.fetchrow(
                    """
                    select key, method, path, state, status_code, response_body, created_at, expires_at
                    from idempotency_keys
                    where key = $1
                    for update
                    """,
                    key,
                )
                existing = IdempotencyRecord(**dict(row)) if row else None
                replay = decide_existing(existing, method=method, path=path, now=await self._db_now(conn))
                if replay is not None:
                    return replay
                await conn.execute(
                    """
                    insert into idempotency_keys (key, method, path, state, expires_at)
                    values ($1, $2, $3, $4, now() + ($5::int * interval '1 second'))
                    on conflict (key) do update set
                      method = excluded.method,
                      path = excluded.path,
                      state = excluded.state,
                      status_code = null,
                      response_body = null,
                      created_at = now(),
                      expires_at = excluded.expires_at
                    """,
                    key,
                    method,
                    path,
                    STATE_STARTED,
                    self.idempotency_in_flight_ttl_seconds,
                )
                return Proceed(key=key, method=method, path=path)

    async def complete_idempotent(self, token: Proceed, *, status_code: int, body: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                update idempotency_keys
                set
                  state = $2,
                  status_code = $3,
                  response_body = $4,
                  expires_at = now() + ($5::int * interval '1 second')
                where key = $1
                """,
                token.key,
                STATE_COMPLETED,
                status_code,
                body,
                self.idempotency_ttl_seconds,
            )

    async def release_idempotent(self, token: Proceed) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "delete from idempotency_keys where key = $1 and state = $2",
                token.key,
                STATE_STARTED,
            )

    async def purge_expired_idempotency_keys(self) -> int:
        async with self._connection() as conn:
            rows = await conn.fetch("delete from idempotency_keys where expires_at <= now() returning key")
        return len(rows)

    # internals

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        started_at = time.perf_counter()
        try:
            conn = await pool.acquire()
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            self.pool_metrics.on_failure()
            raise RepositoryUnavailableError("database unavailable") from exc
        self.pool_metrics.on_acquire(wait_ms=(time.perf_counter() - started_at) * 1000.0)
        try:
            yield conn
        finally:
            self.pool_metrics.on_release()
            await pool.release(conn)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    async def _db_now(conn: asyncpg.Connection) -> datetime:
        return await conn.fetchval("select now()")

    def _job_max_attempts(self, data: JobCreate) -> int:
        return data.max_attempts if data.max_attempts is not None else self.job_max_attempts

    async def _insert_job(self, conn: asyncpg.Connection, data: JobCreate) -> JobRecord:
        max_attempts = self._job_max_attempts(data)
        check_job_create(data, max_attempts=max_attempts)
        if data.article_id:
            _require_uuid(data.article_id, "article")
        try:
            row = await conn.fetchrow(
                f"""
                insert into jobs (
                  job_type,
                  site_id,
                  article_id,
                  keyword_id,
                  payload,
                  priority,
                  max_attempts,
                  scheduled_for
                )
                values ($1::job_type, $2, $3::uuid, $4, $5::jsonb, $6, $7, coalesce($8::timestamptz, now()))
                returning {JOB_COLUMNS}
                """,
                JobType(data.job_type).value,
                data.site_id,
                data.article_id,
                data.keyword_id,
                json.dumps(data.payload or {}),
                data.priority,
                max_attempts,
                data.scheduled_for,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("article not found") from exc
        return self._job_from_row(row)

    async def _insert_follow_on(self, conn: asyncpg.Connection, item: FollowOnJob) -> str | None:
        job = item.job
        if item.seed is not None:
            article = await self._insert_article(conn, item.seed, status=ArticleStatus.GENERATING)
            if article is None:
                logger.info(
                    "article seed skipped site_id=%s slug=%s reason=slug_taken",
                    item.seed.site_id,
                    item.seed.slug,
                )
                return None
            job = article_stage_job(article, job.job_type, priority=job.priority, options=job.payload.get("options"))
        if item.skip_if_active and await self._has_active_job(
            conn, job.job_type, article_id=job.article_id, site_id=job.site_id
        ):
            return None
        inserted = await self._insert_job(conn, job)
        return inserted.id

    async def _has_active_job(
        self,
        conn: asyncpg.Connection,
        job_type: JobType,
        *,
        article_id: str | None,
        site_id: str | None,
        pending_only: bool = False,
    ) -> bool:
        statuses = ["pending"] if pending_only else ["pending", "processing"]
        return bool(
            await conn.fetchval(
                """
                select exists (
                  select 1
                  from jobs
                  where job_type = $1::job_type
                    and status::text = any($2::text[])
                    and article_id is not distinct from $3::uuid
                    and ($4::text is null or site_id = $4)
                )
                """,
                job_type.value,
                statuses,
                article_id,
                site_id,
            )
        )

    async def _enqueue_site_deploy(self, conn: asyncpg.Connection, article: ArticleRecord) -> str | None:
        if await self._has_active_job(conn, JobType.DEPLOY, article_id=None, site_id=article.site_id, pending_only=True):
            return None
        job = await self._insert_job(
            conn,
            JobCreate(
                job_type=JobType.DEPLOY,
                site_id=article.site_id,
                payload={"site_id": article.site_id, "trigger": "publish", "article_id": article.id},
            ),
        )
        return job.id

    async def _insert_article(
        self,
        conn: asyncpg.Connection,
        seed: ArticleSeed,
        *,
        status: ArticleStatus,
    ) -> ArticleRecord | None:
        row = await conn.fetchrow(
            f"""
            insert into articles (site_id, title, slug, target_keyword, content_type, risk_level, status)
            values ($1, $2, $3, $4, $5, $6, $7::article_status)
            on conflict (site_id, slug) do nothing
            returning {ARTICLE_COLUMNS}
            """,
            seed.site_id,
            seed.title,
            seed.slug,
            seed.target_keyword,
            seed.content_type.value,
            seed.risk_level.value,
            status.value,
        )
        if not row:
            return None
        return self._article_from_row(row)

    async def _lock_job(self, conn: asyncpg.Connection, job_id: str) -> JobRecord:
        row = await conn.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid for update", job_id)
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_from_row(row)

    async def _lock_article(self, conn: asyncpg.Connection, article_id: str) -> ArticleRecord:
        row = await conn.fetchrow(
            f"select {ARTICLE_COLUMNS} from articles where id = $1::uuid for update",
            article_id,
        )
        if not row:
            raise RepositoryNotFoundError("article not found")
        return self._article_from_row(row)

    async def _write_article(self, conn: asyncpg.Connection, article: ArticleRecord) -> None:
        await conn.execute(
            """
            update articles
            set
              title = $2,
              slug = $3,
              status = $4::article_status,
              content_type = $5,
              risk_level = $6,
              body = $7,
              outline = $8::jsonb,
              research = $9::jsonb,
              meta_description = $10,
              content_fingerprint = $11,
              revision = $12,
              published_at = $13,
              published_by = $14,
              last_reviewed_at = $15,
              last_reviewed_by = $16,
              review_requested_at = $17,
              updated_at = now()
            where id = $1::uuid
            """,
            article.id,
            article.title,
            article.slug,
            article.status.value,
            article.content_type.value,
            article.risk_level.value,
            article.body,
            json.dumps(article.outline) if article.outline is not None else None,
            json.dumps(article.research) if article.research is not None else None,
            article.meta_description,
            article.content_fingerprint,
            article.revision,
            article.published_at,
            article.published_by,
            article.last_reviewed_at,
            article.last_reviewed_by,
            article.review_requested_at,
        )

    async def _apply_changes(
        self,
        conn: asyncpg.Connection,
        article: ArticleRecord,
        changes: ArticleChanges,
        *,
        actor: Actor,
        now: datetime,
    ) -> list[str]:
        fields = apply_article_changes(article, changes, now=now)
        if any(name in fields for name in ("title", "body", "meta_description")):
            revision = next_revision(article, changes, actor=actor, now=now)
            await conn.execute(
                """
                insert into article_revisions (
                  id,
                  article_id,
                  revision_number,
                  title,
                  body,
                  meta_description,
                  content_hash,
                  word_count,
                  change_type,
                  change_summary,
                  created_by,
                  created_at
                )
                values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                revision.id,
                revision.article_id,
                revision.revision_number,
                revision.title,
                revision.body,
                revision.meta_description,
                revision.content_hash,
                revision.word_count,
                revision.change_type.value,
                revision.change_summary,
                revision.created_by,
                revision.created_at,
            )
        if fields:
            await self._write_article(conn, article)
        return fields

    async def _apply_transition(
        self,
        conn: asyncpg.Connection,
        article: ArticleRecord,
        plan: TransitionPlan,
        *,
        actor: Actor,
        now: datetime,
    ) -> ReviewEventRecord:
        event = apply_plan(article, plan, actor=actor, now=now)
        await self._insert_event(conn, event)
        return event

    async def _insert_event(self, conn: asyncpg.Connection, event: ReviewEventRecord) -> None:
        await conn.execute(
            """
            insert into review_events (
              id,
              article_id,
              revision,
              actor_id,
              actor_role,
              event_type,
              reason_code,
              rationale,
              metadata,
              created_at
            )
            values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
            """,
            event.id,
            event.article_id,
            event.revision,
            event.actor_id,
            event.actor_role.value,
            event.event_type.value,
            event.reason_code,
            event.rationale,
            json.dumps(event.metadata),
            event.created_at,
        )

    async def _fail_terminally(
        self,
        conn: asyncpg.Connection,
        job: JobRecord,
        error: str,
    ) -> tuple[JobRecord, ArticleStatus | None]:
        row = await conn.fetchrow(
            f"""
            update jobs
            set
              status = 'failed',
              error_message = $2,
              completed_at = now(),
              locked_until = null,
              locked_by = null,
              lock_token = null
            where id = $1::uuid
            returning {JOB_COLUMNS}
            """,
            job.id,
            error,
        )
        failed = self._job_from_row(row)
        if failed.job_type not in ARTICLE_STAGE_CHAIN or not failed.article_id:
            return failed, None
        article = await self._lock_article(conn, failed.article_id)
        plans = plan_pipeline_failure(article, job_type=failed.job_type.value, error=error)
        if plans:
            now = await self._db_now(conn)
            for plan in plans:
                await self._apply_transition(conn, article, plan, actor=Actor.system(), now=now)
            await self._write_article(conn, article)
        return failed, article.status

    async def _resolve_policy(self, conn: asyncpg.Connection, article: ArticleRecord) -> ResolvedPolicy:
        rows = await conn.fetch(
            f"select {POLICY_COLUMNS} from approval_policies where risk_level = $1",
            article.risk_level.value,
        )
        return resolve_policy(
            site_id=article.site_id,
            content_type=article.content_type,
            risk_level=article.risk_level,
            policies=[self._policy_from_row(row) for row in rows],
        )

    async def _review_state(self, conn: asyncpg.Connection, article: ArticleRecord) -> ReviewState:
        qa_row = await conn.fetchrow(
            f"""
            select {QA_RESULT_COLUMNS}
            from qa_checklist_results
            where article_id = $1::uuid and revision = $2
            order by completed_at desc, id desc
            limit 1
            """,
            article.id,
            article.revision,
        )
        expert_signed = await conn.fetchval(
            """
            select exists (
              select 1
              from review_events
              where article_id = $1::uuid and event_type = 'expert_signed' and revision = $2
            )
            """,
            article.id,
            article.revision,
        )
        return ReviewState(
            policy=await self._resolve_policy(conn, article),
            latest_qa=self._qa_result_from_row(qa_row) if qa_row else None,
            expert_signed=bool(expert_signed),
        )

    async def _lookup_template(
        self,
        conn: asyncpg.Connection,
        article: ArticleRecord,
        template_id: str | None,
    ) -> QaTemplateRecord:
        if template_id is not None and template_id.startswith(f"{DEFAULT_TEMPLATE_PREFIX}:"):
            try:
                return default_checklist(RiskLevel(template_id.split(":", 1)[1]))
            except ValueError as exc:
                raise RepositoryNotFoundError("qa template not found") from exc
        if template_id is not None:
            row = await conn.fetchrow(
                """
                select id, name, content_type, risk_level, items, created_at, updated_at
                from qa_checklist_templates
                where id = $1
                """,
                template_id,
            )
            if not row:
                raise RepositoryNotFoundError("qa template not found")
            return self._template_from_row(row)
        rows = await conn.fetch(
            """
            select id, name, content_type, risk_level, items, created_at, updated_at
            from qa_checklist_templates
            where risk_level = $1
            """,
            article.risk_level.value,
        )
        return select_template(
            content_type=article.content_type,
            risk_level=article.risk_level,
            templates=[self._template_from_row(row) for row in rows],
        )

    @staticmethod
    def _job_from_row(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            site_id=row["site_id"],
            article_id=row["article_id"],
            keyword_id=row["keyword_id"],
            payload=_coerce_json_dict(row["payload"]),
            result=_coerce_json_dict(row["result"]) if row["result"] is not None else None,
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            scheduled_for=row["scheduled_for"],
            locked_until=row["locked_until"],
            locked_by=row["locked_by"],
            lock_token=row["lock_token"],
            seq=row["seq"],
        )

    @staticmethod
    def _article_from_row(row: asyncpg.Record) -> ArticleRecord:
        return ArticleRecord(
            id=row["id"],
            site_id=row["site_id"],
            title=row["title"],
            slug=row["slug"],
            status=ArticleStatus(row["status"]),
            content_type=ContentType(row["content_type"]),
            risk_level=RiskLevel(row["risk_level"]),
            target_keyword=row["target_keyword"],
            body=row["body"],
            outline=_coerce_json_dict(row["outline"]) if row["outline"] is not None else None,
            research=_coerce_json_dict(row["research"]) if row["research"] is not None else None,
            meta_description=row["meta_description"],
            content_fingerprint=row["content_fingerprint"],
            revision=row["revision"],
            published_at=row["published_at"],
            published_by=row["published_by"],
            last_reviewed_at=row["last_reviewed_at"],
            last_reviewed_by=row["last_reviewed_by"],
            review_requested_at=row["review_requested_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _event_from_row(row: asyncpg.Record) -> ReviewEventRecord:
        return ReviewEventRecord(
            id=row["id"],
            article_id=row["article_id"],
            actor_id=row["actor_id"],
            actor_role=ReviewerRole(row["actor_role"]),
            event_type=ReviewEventType(row["event_type"]),
            revision=row["revision"],
            reason_code=row["reason_code"],
            rationale=row["rationale"],
            metadata=_coerce_json_dict(row["metadata"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _qa_result_from_row(row: asyncpg.Record) -> QaResultRecord:
        return QaResultRecord(
            id=row["id"],
            article_id=row["article_id"],
            template_id=row["template_id"],
            reviewer_id=row["reviewer_id"],
            revision=row["revision"],
            results=_coerce_json_dict(row["results"]),
            all_passed=row["all_passed"],
            test_run_id=row["test_run_id"],
            harness_version=row["harness_version"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _policy_from_row(row: asyncpg.Record) -> ApprovalPolicyRecord:
        return ApprovalPolicyRecord(
            id=row["id"],
            site_id=row["site_id"],
            content_type=ContentType(row["content_type"]) if row["content_type"] else None,
            risk_level=RiskLevel(row["risk_level"]),
            required_role=ReviewerRole(row["required_role"]),
            requires_qa_checklist=row["requires_qa_checklist"],
            requires_expert_signoff=row["requires_expert_signoff"],
            auto_publish=row["auto_publish"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _template_from_row(row: asyncpg.Record) -> QaTemplateRecord:
        items = row["items"]
        if isinstance(items, str):
            items = json.loads(items)
        return QaTemplateRecord(
            id=row["id"],
            name=row["name"],
            items=parse_checklist_items(items or []),
            content_type=ContentType(row["content_type"]) if row["content_type"] else None,
            risk_level=RiskLevel(row["risk_level"]) if row["risk_level"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _ownership_problem(job: JobRecord, lock_token: str) -> str | None:
    if job.status == JobStatus.CANCELLED:
        return "cancelled"
    if job.status != JobStatus.PROCESSING or job.lock_token != lock_token:
        return "lease_lost"
    return None


def _require_uuid(value: str, entity: str) -> None:
    try:
        UUID(str(value))
    except ValueError as exc:
        raise RepositoryNotFoundError(f"{entity} not found") from exc


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if not isinstance(value, dict):
        return {}
    return value


def _item_to_dict(item: Any) -> dict[str, Any]:
    return {
        "id": item.id,
        "category": item.category,
        "label": item.label,
        "required": item.required,
        "evidence_fields": list(item.evidence_fields),
    }


@lru_cache
def get_repository() -> PostgresRepository | InMemoryStore:
    settings = get_settings()
    thresholds = QueueSloThresholds(
        pending_age_seconds=settings.queue_slo_pending_age_seconds,
        error_rate_pct=settings.queue_slo_error_rate_pct,
        worker_idle_seconds=settings.queue_slo_worker_idle_seconds,
        pending_backlog=settings.queue_slo_pending_backlog,
    )
    if settings.storage_backend == "memory":
        return InMemoryStore(
            job_max_attempts=settings.job_max_attempts,
            job_retry_base_seconds=settings.job_retry_base_seconds,
            job_retry_max_seconds=settings.job_retry_max_seconds,
            qa_require_all_required_checked=settings.qa_require_all_required_checked,
            idempotency_ttl_seconds=settings.idempotency_ttl_seconds,
            idempotency_in_flight_ttl_seconds=settings.idempotency_in_flight_ttl_seconds,
            slo_thresholds=thresholds,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
        qa_require_all_required_checked=settings.qa_require_all_required_checked,
        idempotency_ttl_seconds=settings.idempotency_ttl_seconds,
        idempotency_in_flight_ttl_seconds=settings.idempotency_in_flight_ttl_seconds,
        pool_warning_ratio=settings.database_pool_warning_ratio,
        slo_thresholds=thresholds,
    )
