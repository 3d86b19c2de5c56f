from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from sitefleet.core.types import ArticleStatus, JobStatus, JobType, ReviewerRole
from sitefleet.services.records import Actor, ArticleCreate, JobCreate
from sitefleet.services.store import InMemoryStore

WORKER_HEADERS = {
    "X-Module-Id": "local-worker",
    "X-API-Key": "local-worker-key",
}

READER_HEADERS = {
    "X-Module-Id": "local-reader",
    "X-API-Key": "local-reader-key",
}


def _enqueue(store: InMemoryStore, job_type: JobType = JobType.ANALYTICS_FETCH, **kwargs):
    return asyncio.run(store.enqueue_job(JobCreate(job_type=job_type, site_id="site-1", payload={"site_id": "site-1"}, **kwargs)))


def test_machine_auth_is_required(api_client: TestClient) -> None:
    assert api_client.get("/jobs").status_code == 401
    wrong_key = {"X-Module-Id": "local-worker", "X-API-Key": "nope"}
    assert api_client.get("/jobs", headers=wrong_key).status_code == 401
    unknown = {"X-Module-Id": "ghost", "X-API-Key": "local-worker-key"}
    assert api_client.get("/jobs", headers=unknown).status_code == 401


def test_read_scope_cannot_claim(api_client: TestClient, api_store: InMemoryStore) -> None:
    _enqueue(api_store)

    listed = api_client.get("/jobs", headers=READER_HEADERS)
    assert listed.status_code == 200
    assert len(listed.json()) == 1

    claim = api_client.post("/jobs/claim", json={}, headers=READER_HEADERS)
    assert claim.status_code == 403


def test_claim_complete_flow(api_client: TestClient, api_store: InMemoryStore) -> None:
    job = _enqueue(api_store)

    claim = api_client.post("/jobs/claim", json={"worker_id": "runner-1", "lease_seconds": 120}, headers=WORKER_HEADERS)
    assert claim.status_code == 200
    claimed = claim.json()
    assert claimed["id"] == job.id
    assert claimed["status"] == "processing"
    assert claimed["locked_by"] == "runner-1"
    assert claimed["lock_token"]

    empty = api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS)
    assert empty.status_code == 204
    assert empty.content == b""

    stale = api_client.post(
        f"/jobs/{job.id}/complete",
        json={"lock_token": "not-the-token", "result": {}},
        headers=WORKER_HEADERS,
    )
    assert stale.status_code == 200
    assert stale.json()["applied"] is False
    assert stale.json()["reason"] == "lease_lost"

    done = api_client.post(
        f"/jobs/{job.id}/complete",
        json={"lock_token": claimed["lock_token"], "result": {"sessions": 1200}},
        headers=WORKER_HEADERS,
    )
    assert done.status_code == 200
    body = done.json()
    assert body["applied"] is True
    assert body["job"]["status"] == "completed"
    assert body["job"]["result"] == {"sessions": 1200}
    assert "lock_token" not in body["job"]

    fetched = api_client.get(f"/jobs/{job.id}", headers=READER_HEADERS)
    assert fetched.json()["status"] == "completed"


def test_claim_honours_job_type_filter(api_client: TestClient, api_store: InMemoryStore) -> None:
    _enqueue(api_store)

    filtered = api_client.post("/jobs/claim", json={"job_types": ["deploy"]}, headers=WORKER_HEADERS)
    assert filtered.status_code == 204

    invalid = api_client.post("/jobs/claim", json={"job_types": ["translate"]}, headers=WORKER_HEADERS)
    assert invalid.status_code == 422


def test_fail_schedules_retry(api_client: TestClient, api_store: InMemoryStore) -> None:
    job = _enqueue(api_store)
    claimed = api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).json()

    failed = api_client.post(
        f"/jobs/{job.id}/fail",
        json={"lock_token": claimed["lock_token"], "error": "upstream timeout"},
        headers=WORKER_HEADERS,
    )

    assert failed.status_code == 200
    body = failed.json()
    assert body["applied"] is True
    assert body["job"]["status"] == "pending"
    assert body["job"]["error_message"] == "Retry 1/3: upstream timeout"


def test_batch_outcomes_map_to_complete_or_fail(api_client: TestClient, api_store: InMemoryStore) -> None:
    skipped_job = _enqueue(api_store, priority=1)
    failed_job = _enqueue(api_store)

    skipped_claim = api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).json()
    assert skipped_claim["id"] == skipped_job.id
    skipped = api_client.post(
        f"/jobs/{skipped_job.id}/outcome",
        json={"lock_token": skipped_claim["lock_token"], "outcome": "skipped", "reason": "no analytics property"},
        headers=WORKER_HEADERS,
    )
    assert skipped.status_code == 200
    assert skipped.json()["job"]["status"] == "completed"
    assert skipped.json()["job"]["result"] == {"outcome": "skipped", "reason": "no analytics property"}

    failed_claim = api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).json()
    failed = api_client.post(
        f"/jobs/{failed_job.id}/outcome",
        json={"lock_token": failed_claim["lock_token"], "outcome": "failed", "reason": "quota exceeded"},
        headers=WORKER_HEADERS,
    )
    assert failed.status_code == 200
    assert failed.json()["job"]["status"] == JobStatus.PENDING.value
    assert failed.json()["job"]["error_message"] == "Retry 1/3: quota exceeded"


def test_idempotent_claim_returns_same_job(api_client: TestClient, api_store: InMemoryStore) -> None:
    _enqueue(api_store)
    _enqueue(api_store)
    headers = {**WORKER_HEADERS, "Idempotency-Key": "claim-1"}

    first = api_client.post("/jobs/claim", json={}, headers=headers)
    second = api_client.post("/jobs/claim", json={}, headers=headers)

    assert first.json()["id"] == second.json()["id"]
    assert second.headers["Idempotent-Replayed"] == "true"
    assert len(asyncio.run(api_store.list_jobs(status=JobStatus.PROCESSING))) == 1


def test_unknown_job_is_not_found(api_client: TestClient) -> None:
    response = api_client.get("/jobs/00000000-0000-0000-0000-000000000000", headers=WORKER_HEADERS)
    assert response.status_code == 404


def _create_article(store: InMemoryStore, slug: str, first_stage: JobType):
    article, job = asyncio.run(
        store.create_article(
            ArticleCreate(site_id="site-1", title=slug.replace("-", " ").title(), slug=slug),
            actor=Actor("editor-1", ReviewerRole.EDITOR),
            first_stage=first_stage,
        )
    )
    return article, job


def test_completing_a_stage_over_http_enqueues_the_next_stage(api_client: TestClient, api_store: InMemoryStore) -> None:
    article, outline_job = _create_article(api_store, "tent-heaters", JobType.OUTLINE)

    claimed = api_client.post("/jobs/claim", json={"worker_id": "runner-1"}, headers=WORKER_HEADERS).json()
    assert claimed["id"] == outline_job.id
    done = api_client.post(
        f"/jobs/{outline_job.id}/complete",
        json={"lock_token": claimed["lock_token"], "result": {"sections": 3}},
        headers=WORKER_HEADERS,
    )

    assert done.status_code == 200
    body = done.json()
    assert body["applied"] is True
    assert body["article_status"] == "generating"
    assert len(body["follow_on_job_ids"]) == 1
    draft = api_client.get(f"/jobs/{body['follow_on_job_ids'][0]}", headers=WORKER_HEADERS).json()
    assert draft["job_type"] == "draft"
    assert draft["article_id"] == article.id

    draft_claim = api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).json()
    assert draft_claim["id"] == draft["id"]
    reported = api_client.post(
        f"/jobs/{draft['id']}/outcome",
        json={"lock_token": draft_claim["lock_token"], "outcome": "success"},
        headers=WORKER_HEADERS,
    )
    assert reported.status_code == 200
    assert len(reported.json()["follow_on_job_ids"]) == 1
    humanize = api_client.get(f"/jobs/{reported.json()['follow_on_job_ids'][0]}", headers=WORKER_HEADERS).json()
    assert humanize["job_type"] == "humanize"


def test_completing_the_last_stage_over_http_moves_article_to_review(
    api_client: TestClient, api_store: InMemoryStore
) -> None:
    article, metadata_job = _create_article(api_store, "camp-stoves", JobType.METADATA)

    claimed = api_client.post("/jobs/claim", json={}, headers=WORKER_HEADERS).json()
    done = api_client.post(
        f"/jobs/{metadata_job.id}/complete",
        json={"lock_token": claimed["lock_token"]},
        headers=WORKER_HEADERS,
    )

    assert done.status_code == 200
    assert done.json()["follow_on_job_ids"] == []
    assert done.json()["article_status"] == "review"
    assert asyncio.run(api_store.get_article(article.id)).status == ArticleStatus.REVIEW
