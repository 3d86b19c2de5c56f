from __future__ import annotations

import asyncio
import hashlib
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

from sitefleet.core.config import get_settings
from sitefleet.core.types import ReviewAction, ReviewerRole, RevisionChangeType
from sitefleet.main import app
from sitefleet.services.errors import RepositoryConflictError
from sitefleet.services.records import Actor, ArticleChanges, ArticleCreate
from sitefleet.services.repository import PostgresRepository, get_repository

WORKER_HEADERS = {
    "X-Module-Id": "integration-worker",
    "X-API-Key": "integration-worker-key",
}

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "migrations" / "0001_content_pipeline.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("SF_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require SF_DATABASE_URL or DATABASE_URL")
    _run(_execute(url, MIGRATION_PATH.read_text()))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_truncate_integration_tables(database_url))
    _run(_register_worker_module(database_url))


@pytest.fixture
def api_client(database_url: str, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("SF_STORAGE_BACKEND", "postgres")
    monkeypatch.setenv("SF_DATABASE_URL", database_url)
    monkeypatch.setenv("SF_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SF_SUPABASE_ANON_KEY", "anon-key")
    get_settings.cache_clear()
    get_repository.cache_clear()

    with TestClient(app) as client:
        yield client

    get_repository.cache_clear()
    get_settings.cache_clear()


def test_article_stage_claim_complete_and_follow_on(api_client: TestClient, database_url: str, login) -> None:
    created = api_client.post(
        "/articles",
        json={"site_id": "site-1", "title": "Best Budget Tents", "risk_level": "low"},
        headers=login("editor", user_id="00000000-0000-0000-0000-000000000101"),
    )
    assert created.status_code == 201
    article_id = created.json()["article"]["id"]
    research_job_id = created.json()["job_id"]

    claim = api_client.post(
        "/jobs/claim",
        json={"worker_id": "integration-1", "lease_seconds": 120, "job_types": ["research"]},
        headers=WORKER_HEADERS,
    )
    assert claim.status_code == 200
    claimed = claim.json()
    assert claimed["id"] == research_job_id
    assert claimed["attempts"] == 1

    assert api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).status_code == 204

    done = api_client.post(
        f"/jobs/{research_job_id}/complete",
        json={"lock_token": claimed["lock_token"], "result": {"sources": 3}},
        headers=WORKER_HEADERS,
    )
    assert done.status_code == 200
    body = done.json()
    assert body["applied"] is True
    assert body["job"]["status"] == "completed"
    assert len(body["follow_on_job_ids"]) == 1

    outline = api_client.get(f"/jobs/{body['follow_on_job_ids'][0]}", headers=WORKER_HEADERS)
    assert outline.status_code == 200
    assert outline.json()["job_type"] == "outline"
    assert outline.json()["article_id"] == article_id

    status = _run(_fetchval(database_url, "select status::text from articles where id = $1::uuid", article_id))
    assert status == "generating"


def test_concurrent_claims_have_single_winner(api_client: TestClient, database_url: str, login) -> None:
    created = api_client.post(
        "/articles",
        json={"site_id": "site-1", "title": "Tent Heaters"},
        headers=login("editor", user_id="00000000-0000-0000-0000-000000000102"),
    )
    assert created.status_code == 201

    async def claim_all() -> list[Any]:
        repository = PostgresRepository(
            database_url=database_url,
            min_pool_size=1,
            max_pool_size=5,
            job_max_attempts=3,
            job_retry_base_seconds=60,
            job_retry_max_seconds=1800,
        )
        try:
            return await asyncio.gather(
                *(repository.claim_next_job(worker_id=f"racer-{index}", lease_seconds=60) for index in range(5))
            )
        finally:
            await repository.close()

    claims = _run(claim_all())

    winners = [job for job in claims if job is not None]
    assert len(winners) == 1
    assert winners[0].id == created.json()["job_id"]


def test_failed_job_backs_off_and_keeps_retry_message(api_client: TestClient, database_url: str, login) -> None:
    created = api_client.post(
        "/articles",
        json={"site_id": "site-1", "title": "Tent Stakes"},
        headers=login("editor", user_id="00000000-0000-0000-0000-000000000103"),
    )
    job_id = created.json()["job_id"]
    claimed = api_client.post("/jobs/claim", json={"worker_id": "integration-1"}, headers=WORKER_HEADERS).json()

    failed = api_client.post(
        f"/jobs/{job_id}/fail",
        json={"lock_token": claimed["lock_token"], "error": "generator timeout"},
        headers=WORKER_HEADERS,
    )
    assert failed.status_code == 200
    job = failed.json()["job"]
    assert job["status"] == "pending"
    assert job["error_message"] == "Retry 1/3: generator timeout"
    assert job["locked_by"] is None

    assert api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).status_code == 204


def test_review_events_are_append_only(api_client: TestClient, database_url: str, login) -> None:
    created = api_client.post(
        "/articles",
        json={"site_id": "site-1", "title": "Camp Stoves"},
        headers=login("editor", user_id="00000000-0000-0000-0000-000000000104"),
    )
    article_id = created.json()["article"]["id"]
    comment = api_client.post(
        f"/articles/{article_id}/comments",
        json={"body": "Needs a price table."},
        headers=login("viewer", user_id="00000000-0000-0000-0000-000000000105"),
    )
    assert comment.status_code == 201

    with pytest.raises(asyncpg.PostgresError):
        _run(_execute(database_url, "update review_events set rationale = 'edited' where article_id = $1::uuid", article_id))


def test_concurrent_approvals_have_single_winner(database_url: str) -> None:
    editor = Actor("editor-1", ReviewerRole.EDITOR)
    reviewers = [Actor("reviewer-1", ReviewerRole.REVIEWER), Actor("reviewer-2", ReviewerRole.REVIEWER)]
    details = {
        "summary": "Checked every claim against the cited sources.",
        "evidence_quality": "strong",
        "risk_level": "low",
        "confidence_score": 90,
        "issue_codes": [],
        "citations_checked": True,
        "disclosure_checked": True,
        "factuality_assessment": "verified",
        "structure_quality": "strong",
    }

    async def approve_twice() -> tuple[list[Any], str]:
        repository = PostgresRepository(
            database_url=database_url,
            min_pool_size=1,
            max_pool_size=5,
            job_max_attempts=3,
            job_retry_base_seconds=60,
            job_retry_max_seconds=1800,
        )
        try:
            article, _ = await repository.create_article(
                ArticleCreate(site_id="site-1", title="Camp Lanterns", slug="camp-lanterns"),
                actor=editor,
                first_stage=None,
            )
            await repository.edit_article(
                article.id,
                ArticleChanges(body="Five lanterns compared.", change_type=RevisionChangeType.MANUAL_EDIT),
                actor=editor,
            )
            await repository.transition_article(article.id, ReviewAction.SUBMIT, actor=editor)
            template, _ = await repository.get_article_checklist(article.id)
            results = {item.id: {"checked": True} for item in template.items if item.required}
            await repository.submit_qa_result(article.id, reviewer=reviewers[0], results=results)
            outcomes = await asyncio.gather(
                *(
                    repository.transition_article(
                        article.id, ReviewAction.APPROVE, actor=reviewer, rationale="Ready to ship", details=details
                    )
                    for reviewer in reviewers
                ),
                return_exceptions=True,
            )
            return outcomes, article.id
        finally:
            await repository.close()

    outcomes, article_id = _run(approve_twice())

    winners = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    losers = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], RepositoryConflictError)
    approvals = _run(
        _fetchval(
            database_url,
            "select count(*) from review_events where article_id = $1::uuid and event_type = 'approved'",
            article_id,
        )
    )
    assert approvals == 1
    status = _run(_fetchval(database_url, "select status::text from articles where id = $1::uuid", article_id))
    assert status == "approved"


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _truncate_integration_tables(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              qa_checklist_results,
              qa_checklist_templates,
              review_events,
              article_revisions,
              jobs,
              articles,
              approval_policies,
              idempotency_keys,
              module_credentials,
              modules
            restart identity cascade
            """
        )
    finally:
        await conn.close()


async def _register_worker_module(database_url: str) -> None:
    key_hash = hashlib.sha256(WORKER_HEADERS["X-API-Key"].encode("utf-8")).hexdigest()
    conn = await asyncpg.connect(database_url)
    try:
        module_pk = await conn.fetchval(
            """
            insert into modules (module_id, name, scopes)
            values ($1, $1, array['jobs:read', 'jobs:write']::text[])
            returning id
            """,
            WORKER_HEADERS["X-Module-Id"],
        )
        await conn.execute(
            "insert into module_credentials (module_id, key_hash) values ($1, $2)",
            module_pk,
            key_hash,
        )
    finally:
        await conn.close()


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()
