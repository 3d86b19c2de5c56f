from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from sitefleet.core.types import (
    ARTICLE_STAGE_CHAIN,
    ArticleStatus,
    BatchItemOutcome,
    JobStatus,
    JobType,
    ReviewAction,
    ReviewerRole,
    ReviewEventType,
    RiskLevel,
)
from sitefleet.jobs.executor import build_handlers
from sitefleet.services.collaborators import CollaboratorClient
from sitefleet.services.errors import (
    CollaboratorError,
    HandlerRegistryError,
    JobPayloadError,
    PolicyViolationError,
    RepositoryConflictError,
)
from sitefleet.services.pipeline import PipelineDispatcher, apply_batch_outcome
from sitefleet.services.queue import article_stage_job
from sitefleet.services.records import Actor, ArticleCreate, JobCreate
from sitefleet.services.store import InMemoryStore
from sitefleet.worker import poll_once

EDITOR = Actor("editor-1", ReviewerRole.EDITOR)
REVIEWER = Actor("reviewer-1", ReviewerRole.REVIEWER)
EXPERT = Actor("expert-1", ReviewerRole.EXPERT)
ADMIN = Actor("admin-1", ReviewerRole.ADMIN)

GENERATED: dict[str, dict[str, Any]] = {
    "research": {"research": {"sources": ["https://example.org/tents"]}},
    "outline": {"outline": {"sections": ["Intro", "Top picks", "Buying advice"]}},
    "draft": {"title": "Best Budget Tents", "body": "Draft body about tents."},
    "humanize": {"body": "A friendlier body about tents."},
    "seo_optimize": {
        "title": "Best Budget Tents of 2026",
        "body": "An optimized body about budget tents.",
        "meta_description": "Budget tents compared.",
    },
    "metadata": {"title": "Best Budget Tents (2026)", "meta_description": "Seven budget tents compared."},
}


def _collaborator(calls: list[httpx.Request], overrides: dict[str, Any] | None = None) -> CollaboratorClient:
    overrides = overrides or {}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        path = request.url.path
        if path in overrides:
            override = overrides[path]
            if isinstance(override, int):
                return httpx.Response(override, json={"detail": "collaborator said no"})
            return httpx.Response(200, json=override)
        kind, name = path.strip("/").split("/", 1)
        if kind == "generate":
            return httpx.Response(200, json=GENERATED[name])
        return httpx.Response(200, json={"outcome": "success", "result": {"task": name}})

    return CollaboratorClient("https://collab.test", api_key="secret", transport=httpx.MockTransport(handler))


def _dispatcher(store: InMemoryStore, calls: list[httpx.Request], overrides: dict[str, Any] | None = None) -> PipelineDispatcher:
    return PipelineDispatcher(store, build_handlers(_collaborator(calls, overrides)))


async def _poll(dispatcher: PipelineDispatcher):
    return await poll_once(dispatcher, worker_id="w1", lease_seconds=60, job_types=None)


async def _drain(dispatcher: PipelineDispatcher, limit: int = 20) -> list:
    outcomes = []
    for _ in range(limit):
        outcome = await _poll(dispatcher)
        if outcome is None:
            break
        outcomes.append(outcome)
    return outcomes


def test_dispatcher_requires_every_handler(store: InMemoryStore) -> None:
    handlers = build_handlers(_collaborator([]))
    del handlers[JobType.EVALUATE]
    with pytest.raises(HandlerRegistryError):
        PipelineDispatcher(store, handlers)


def test_dispatch_requires_a_claimed_job(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [])

    async def scenario():
        job = await store.enqueue_job(JobCreate(job_type=JobType.EVALUATE))
        with pytest.raises(HandlerRegistryError):
            await dispatcher.dispatch(job)

    asyncio.run(scenario())


def test_high_risk_article_runs_from_research_to_publish(store: InMemoryStore, approval_details) -> None:
    calls: list[httpx.Request] = []
    dispatcher = _dispatcher(store, calls)

    async def scenario():
        article, _ = await store.create_article(
            ArticleCreate(site_id="site-1", title="Best Budget Tents", slug="best-budget-tents", risk_level=RiskLevel.HIGH),
            actor=EDITOR,
        )
        stage_outcomes = await _drain(dispatcher)
        reviewed = await store.get_article(article.id)

        template, _ = await store.get_article_checklist(article.id)
        results = {item.id: {"checked": True} for item in template.items if item.required}
        results["calc_tested"] = {"checked": True}
        await store.submit_qa_result(
            article.id,
            reviewer=REVIEWER,
            results=results,
            evidence={"test_run_id": "run-7", "harness_version": "1.4.0"},
        )
        await store.record_expert_signoff(article.id, actor=EXPERT, rationale="Safety notes reviewed")
        await store.transition_article(
            article.id, ReviewAction.APPROVE, actor=REVIEWER, rationale="Ready to ship", details=approval_details
        )
        published = await store.transition_article(article.id, ReviewAction.PUBLISH, actor=REVIEWER)
        deploy_outcomes = await _drain(dispatcher)
        events = await store.list_review_events(article.id)
        deploy = await store.get_job(published.deploy_job_id)
        return stage_outcomes, reviewed, published, deploy_outcomes, events, deploy

    stage_outcomes, reviewed, published, deploy_outcomes, events, deploy = asyncio.run(scenario())

    assert [outcome.job_type for outcome in stage_outcomes] == list(ARTICLE_STAGE_CHAIN)
    assert {outcome.status for outcome in stage_outcomes} == {"completed"}
    assert reviewed.status == ArticleStatus.REVIEW
    assert reviewed.title == "Best Budget Tents (2026)"
    assert reviewed.body == "An optimized body about budget tents."
    assert reviewed.meta_description == "Seven budget tents compared."
    assert reviewed.research == {"sources": ["https://example.org/tents"]}
    assert reviewed.revision == 4

    assert published.article.status == ArticleStatus.PUBLISHED
    assert [outcome.job_type for outcome in deploy_outcomes] == [JobType.DEPLOY]
    assert deploy.status == JobStatus.COMPLETED
    assert deploy.result == {"task": "deploy", "outcome": "success"}

    event_types = [event.event_type for event in events]
    assert event_types == [
        ReviewEventType.CREATED,
        ReviewEventType.SUBMITTED,
        ReviewEventType.QA_COMPLETED,
        ReviewEventType.EXPERT_SIGNED,
        ReviewEventType.APPROVED,
        ReviewEventType.PUBLISHED,
    ]
    assert events[0].actor_id == "pipeline"
    assert events[0].reason_code == "pipeline_generated"
    assert [request.url.path for request in calls][-1] == "/tasks/deploy"
    assert all(request.headers["Authorization"] == "Bearer secret" for request in calls)


def test_malformed_payload_fails_without_retry(store: InMemoryStore) -> None:
    calls: list[httpx.Request] = []
    dispatcher = _dispatcher(store, calls)

    async def scenario():
        await store.enqueue_job(JobCreate(job_type=JobType.RESEARCH, payload={"site_id": "site-1"}))
        return await _poll(dispatcher)

    outcome = asyncio.run(scenario())
    assert outcome.status == "failed"
    assert outcome.completion.job.status == JobStatus.FAILED
    assert outcome.completion.job.attempts == 1
    assert outcome.error.startswith("invalid payload")
    assert calls == []


def test_transient_collaborator_error_is_retried(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [], {"/generate/research": 503})

    async def scenario():
        article, job = await store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Heaters", slug="tent-heaters"), actor=EDITOR
        )
        outcome = await _poll(dispatcher)
        return outcome, await store.get_article(article.id)

    outcome, article = asyncio.run(scenario())
    assert outcome.status == "retrying"
    assert outcome.completion.job.status == JobStatus.PENDING
    assert outcome.completion.job.error_message == "Retry 1/3: collaborator /generate/research returned status 503"
    assert article.status == ArticleStatus.GENERATING


def test_final_stage_failure_returns_article_to_draft(clock) -> None:
    store = InMemoryStore(clock=clock, job_max_attempts=1)
    dispatcher = _dispatcher(store, [], {"/generate/research": 503})

    async def scenario():
        article, _ = await store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Heaters", slug="tent-heaters"), actor=EDITOR
        )
        outcome = await _poll(dispatcher)
        return outcome, await store.get_article(article.id), await store.list_review_events(article.id)

    outcome, article, events = asyncio.run(scenario())
    assert outcome.status == "failed"
    assert outcome.completion.article_status == ArticleStatus.DRAFT
    assert article.status == ArticleStatus.DRAFT
    assert events[-1].event_type == ReviewEventType.REVERTED
    assert events[-1].reason_code == "pipeline_failed"
    assert events[-1].metadata["job_type"] == "research"


def test_rejected_generation_request_fails_permanently(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [], {"/generate/research": 422})

    async def scenario():
        article, _ = await store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Heaters", slug="tent-heaters"), actor=EDITOR
        )
        outcome = await _poll(dispatcher)
        return outcome, await store.get_article(article.id)

    outcome, article = asyncio.run(scenario())
    assert outcome.status == "failed"
    assert outcome.completion.job.attempts == 1
    assert "collaborator said no" in outcome.error
    assert article.status == ArticleStatus.DRAFT


def test_keyword_research_seeds_new_articles(store: InMemoryStore) -> None:
    overrides = {
        "/tasks/keyword_research": {
            "keywords": [
                "best budget tents",
                {"keyword": "tent heaters", "title": "Tent Heaters Compared"},
                "Best Budget Tents",
                42,
                {"keyword": ""},
            ]
        }
    }
    dispatcher = _dispatcher(store, [], overrides)

    async def scenario():
        await store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Heaters Compared", slug="tent-heaters-compared"),
            actor=EDITOR,
            first_stage=None,
        )
        await store.enqueue_job(
            JobCreate(
                job_type=JobType.KEYWORD_RESEARCH,
                site_id="site-1",
                payload={"site_id": "site-1", "seed_keywords": ["tents"], "limit": 5},
            )
        )
        outcome = await _poll(dispatcher)
        research_jobs = await store.list_jobs(job_type=JobType.RESEARCH)
        return outcome, research_jobs

    outcome, research_jobs = asyncio.run(scenario())

    assert outcome.status == "completed"
    assert outcome.completion.job.result == {"site_id": "site-1", "keywords_returned": 5, "articles_seeded": 2}
    assert len(outcome.completion.follow_on_job_ids) == 1
    assert [job.id for job in research_jobs] == outcome.completion.follow_on_job_ids
    seeded = store.articles[research_jobs[0].article_id]
    assert seeded.slug == "best-budget-tents"
    assert seeded.status == ArticleStatus.GENERATING
    assert seeded.target_keyword == "best budget tents"
    assert research_jobs[0].payload["article_id"] == seeded.id


def test_bulk_seed_deduplicates_slugs(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [])

    async def scenario():
        await store.enqueue_job(
            JobCreate(
                job_type=JobType.BULK_SEED,
                site_id="site-1",
                payload={
                    "site_id": "site-1",
                    "items": [
                        {"title": "Tent Stakes"},
                        {"title": "Tent Stakes"},
                        {"title": "Tarps", "slug": "tarp-guide", "risk_level": "medium"},
                    ],
                },
            )
        )
        return await _poll(dispatcher)

    outcome = asyncio.run(scenario())
    assert outcome.status == "completed"
    assert len(outcome.completion.follow_on_job_ids) == 2
    assert {article.slug for article in store.articles.values()} == {"tent-stakes", "tarp-guide"}
    tarp = next(article for article in store.articles.values() if article.slug == "tarp-guide")
    assert tarp.risk_level == RiskLevel.MEDIUM


def test_content_refresh_skips_when_research_is_active(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [])

    async def scenario():
        article, _ = await store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Stakes", slug="tent-stakes"), actor=EDITOR, first_stage=None
        )
        payload = {"site_id": "site-1", "article_id": article.id, "title": article.title, "reason": "stale prices"}
        await store.enqueue_job(JobCreate(job_type=JobType.CONTENT_REFRESH, site_id="site-1", article_id=article.id, payload=payload))
        first = await _poll(dispatcher)
        await store.enqueue_job(
            JobCreate(job_type=JobType.CONTENT_REFRESH, site_id="site-1", article_id=article.id, payload=payload, priority=5)
        )
        second = await _poll(dispatcher)
        return first, second, await store.list_jobs(job_type=JobType.RESEARCH)

    first, second, research_jobs = asyncio.run(scenario())
    assert first.completion.job.result == {"article_id": research_jobs[0].article_id, "reason": "stale prices"}
    assert len(first.completion.follow_on_job_ids) == 1
    assert second.job_type == JobType.CONTENT_REFRESH
    assert second.completion.follow_on_job_ids == []
    assert len(research_jobs) == 1
    assert "reason" not in research_jobs[0].payload


def test_site_task_outcomes(store: InMemoryStore) -> None:
    overrides = {
        "/tasks/backlink_check": {"outcome": "skipped", "reason": "no backlinks tracked"},
        "/tasks/deploy": {"outcome": "failed", "reason": "build broke"},
    }
    dispatcher = _dispatcher(store, [], overrides)

    async def scenario():
        await store.enqueue_job(
            JobCreate(job_type=JobType.BACKLINK_CHECK, site_id="site-1", payload={"site_id": "site-1"}, priority=1)
        )
        await store.enqueue_job(JobCreate(job_type=JobType.DEPLOY, site_id="site-1", payload={"site_id": "site-1"}))
        return await _poll(dispatcher), await _poll(dispatcher)

    skipped, failed = asyncio.run(scenario())
    assert skipped.status == "completed"
    assert skipped.completion.job.result == {"outcome": "skipped", "reason": "no backlinks tracked"}
    assert failed.status == "retrying"
    assert failed.completion.job.error_message == "Retry 1/3: build broke"


def test_result_for_cancelled_job_is_discarded(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [])

    async def scenario():
        job = await store.enqueue_job(JobCreate(job_type=JobType.DEPLOY, site_id="site-1", payload={"site_id": "site-1"}))
        claimed = await store.claim_next_job(worker_id="w1", lease_seconds=60)
        await store.cancel_job(job.id)
        return await dispatcher.dispatch(claimed)

    outcome = asyncio.run(scenario())
    assert outcome.status == "discarded"
    assert outcome.error == "cancelled"
    assert outcome.completion.job.status == JobStatus.CANCELLED


def test_apply_batch_outcome(store: InMemoryStore) -> None:
    async def scenario():
        await store.enqueue_job(JobCreate(job_type=JobType.RENEWAL_CHECK))
        claimed = await store.claim_next_job(worker_id="w1", lease_seconds=60)
        ready = await apply_batch_outcome(
            store,
            claimed.id,
            lock_token=claimed.lock_token,
            outcome=BatchItemOutcome.READY,
            result={"domains": 3},
        )
        await store.enqueue_job(JobCreate(job_type=JobType.DATASET_CHECK))
        claimed = await store.claim_next_job(worker_id="w1", lease_seconds=60)
        failed = await apply_batch_outcome(store, claimed.id, lock_token=claimed.lock_token, outcome=BatchItemOutcome.FAILED)
        return ready, failed

    ready, failed = asyncio.run(scenario())
    assert ready.job.status == JobStatus.COMPLETED
    assert ready.job.result == {"domains": 3, "outcome": "ready"}
    assert failed.job.status == JobStatus.PENDING
    assert failed.job.error_message == "Retry 1/3: batch item failed"


def test_collaborator_client_errors() -> None:
    async def scenario():
        with pytest.raises(CollaboratorError):
            await CollaboratorClient(None).generate(JobType.DRAFT, {})

        def not_an_object(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["draft"])

        with pytest.raises(CollaboratorError):
            await CollaboratorClient("https://collab.test", transport=httpx.MockTransport(not_an_object)).generate(
                JobType.DRAFT, {}
            )

        def broken_json(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>", headers={"content-type": "text/html"})

        with pytest.raises(CollaboratorError):
            await CollaboratorClient("https://collab.test", transport=httpx.MockTransport(broken_json)).execute(
                JobType.DEPLOY, {}
            )

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CollaboratorError):
            await CollaboratorClient("https://collab.test", transport=httpx.MockTransport(unreachable)).execute(
                JobType.DEPLOY, {}
            )

        def missing(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"detail": "unknown site"})

        with pytest.raises(JobPayloadError) as excinfo:
            await CollaboratorClient("https://collab.test", transport=httpx.MockTransport(missing)).execute(
                JobType.DEPLOY, {}
            )
        return excinfo.value

    error = asyncio.run(scenario())
    assert "unknown site" in str(error)


def test_stage_rewrite_sends_approved_article_back_to_review(store: InMemoryStore, approval_details) -> None:
    dispatcher = _dispatcher(store, [])

    async def scenario():
        article, _ = await store.create_article(
            ArticleCreate(site_id="site-1", title="Best Budget Tents", slug="best-budget-tents"), actor=EDITOR
        )
        await _drain(dispatcher)
        template, _ = await store.get_article_checklist(article.id)
        results = {item.id: {"checked": True} for item in template.items if item.required}
        await store.submit_qa_result(article.id, reviewer=REVIEWER, results=results)
        approved = await store.transition_article(
            article.id, ReviewAction.APPROVE, actor=REVIEWER, rationale="Ready to ship", details=approval_details
        )

        payload = {"site_id": "site-1", "article_id": article.id, "title": article.title, "reason": "stale prices"}
        await store.enqueue_job(JobCreate(job_type=JobType.CONTENT_REFRESH, site_id="site-1", article_id=article.id, payload=payload))
        before_draft = []
        for _ in range(3):
            await _poll(dispatcher)
            before_draft.append((await store.get_article(article.id)).status)
        draft = await _poll(dispatcher)
        after_draft = await store.get_article(article.id)
        await _drain(dispatcher)
        final = await store.get_article(article.id)

        with pytest.raises(RepositoryConflictError):
            await store.transition_article(article.id, ReviewAction.PUBLISH, actor=REVIEWER)
        with pytest.raises(PolicyViolationError) as stale_qa:
            await store.transition_article(
                article.id, ReviewAction.APPROVE, actor=REVIEWER, rationale="Ship it again", details=approval_details
            )
        events = await store.list_review_events(article.id)
        return approved, before_draft, draft, after_draft, final, stale_qa.value, events

    approved, before_draft, draft, after_draft, final, stale_qa, events = asyncio.run(scenario())

    assert approved.article.status == ArticleStatus.APPROVED
    assert before_draft == [ArticleStatus.APPROVED] * 3
    assert draft.job_type == JobType.DRAFT
    assert after_draft.status == ArticleStatus.REVIEW
    assert after_draft.revision > approved.article.revision
    assert final.status == ArticleStatus.REVIEW
    assert stale_qa.guard == "qa_checklist"
    reverted = [event for event in events if event.event_type == ReviewEventType.REVERTED]
    assert len(reverted) == 1
    assert reverted[0].actor_id == "pipeline"
    assert reverted[0].reason_code == "content_refreshed"


def test_stage_output_for_archived_article_is_dropped(store: InMemoryStore) -> None:
    dispatcher = _dispatcher(store, [])

    async def scenario():
        article, _ = await store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Stakes", slug="tent-stakes"), actor=EDITOR, first_stage=None
        )
        await store.transition_article(article.id, ReviewAction.ARCHIVE, actor=ADMIN)
        await store.enqueue_job(article_stage_job(article, JobType.DRAFT))
        outcome = await _poll(dispatcher)
        return outcome, await store.get_article(article.id), await store.list_jobs(job_type=JobType.HUMANIZE)

    outcome, article, humanize_jobs = asyncio.run(scenario())
    assert outcome.job_type == JobType.DRAFT
    assert outcome.completion.applied is True
    assert outcome.completion.reason == "article_archived"
    assert outcome.completion.follow_on_job_ids == []
    assert outcome.completion.article_status == ArticleStatus.ARCHIVED
    assert article.status == ArticleStatus.ARCHIVED
    assert article.body is None
    assert article.revision == 0
    assert humanize_jobs == []
