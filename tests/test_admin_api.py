from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from sitefleet.core.types import JobStatus, JobType, ReviewerRole
from sitefleet.services.records import Actor, ArticleCreate, JobCreate
from sitefleet.services.store import InMemoryStore


def test_admin_routes_require_admin(api_client: TestClient, login) -> None:
    for role in ("viewer", "editor", "reviewer", "expert"):
        response = api_client.get("/admin/jobs", headers=login(role))
        assert response.status_code == 403


def test_enqueue_validates_payload_for_job_type(api_client: TestClient, login) -> None:
    headers = login("admin")

    invalid = api_client.post(
        "/admin/jobs",
        json={"job_type": "keyword_research", "site_id": "site-1", "payload": {"site_id": "site-1"}},
        headers=headers,
    )
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["error"] == "invalid keyword_research payload"

    valid = api_client.post(
        "/admin/jobs",
        json={
            "job_type": "keyword_research",
            "site_id": "site-1",
            "payload": {"site_id": "site-1", "seed_keywords": ["camping tents"]},
            "priority": 3,
        },
        headers=headers,
    )
    assert valid.status_code == 201
    assert valid.json()["status"] == "pending"
    assert valid.json()["priority"] == 3

    listed = api_client.get("/admin/jobs", params={"job_type": "keyword_research"}, headers=headers)
    assert [job["id"] for job in listed.json()] == [valid.json()["id"]]


def test_enqueue_rejects_job_for_a_different_article(api_client: TestClient, api_store: InMemoryStore, login) -> None:
    headers = login("admin")
    target, _ = asyncio.run(
        api_store.create_article(
            ArticleCreate(site_id="site-1", title="Tent Stakes", slug="tent-stakes"),
            actor=Actor("editor-1", ReviewerRole.EDITOR),
            first_stage=None,
        )
    )
    other, _ = asyncio.run(
        api_store.create_article(
            ArticleCreate(site_id="site-1", title="Tarp Guide", slug="tarp-guide"),
            actor=Actor("editor-1", ReviewerRole.EDITOR),
            first_stage=None,
        )
    )

    def stage_request(article_id: str, payload_article_id: str) -> dict:
        return {
            "job_type": "draft",
            "site_id": "site-1",
            "article_id": article_id,
            "payload": {"site_id": "site-1", "article_id": payload_article_id, "title": "Tent Stakes"},
        }

    mismatched = api_client.post("/admin/jobs", json=stage_request(target.id, other.id), headers=headers)
    assert mismatched.status_code == 422
    assert mismatched.json()["detail"] == "article_id does not match payload.article_id"

    missing = "00000000-0000-0000-0000-00000000dead"
    unknown = api_client.post("/admin/jobs", json=stage_request(missing, missing), headers=headers)
    assert unknown.status_code == 404

    matched = api_client.post("/admin/jobs", json=stage_request(target.id, target.id), headers=headers)
    assert matched.status_code == 201
    assert matched.json()["article_id"] == target.id
    assert [job.id for job in asyncio.run(api_store.list_jobs())] == [matched.json()["id"]]


def test_cancel_and_maintenance_routes(api_client: TestClient, api_store: InMemoryStore, clock, login) -> None:
    headers = login("admin")
    job = asyncio.run(api_store.enqueue_job(JobCreate(job_type=JobType.DEPLOY, site_id="site-1", payload={"site_id": "site-1"})))

    cancelled = api_client.post(f"/admin/jobs/{job.id}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert api_client.post(f"/admin/jobs/{job.id}/cancel", headers=headers).status_code == 409

    clock.advance(days=40)
    purged = api_client.post("/admin/jobs/purge", headers=headers)
    assert purged.json() == {"count": 1}

    assert api_client.post("/admin/jobs/retry-failed", headers=headers).json() == {"count": 0}
    assert api_client.post("/admin/jobs/expire-leases", headers=headers).json() == {"count": 0}
    assert api_client.post("/admin/idempotency/purge", headers=headers).json() == {"count": 0}


def test_queue_health(api_client: TestClient, api_store: InMemoryStore, login) -> None:
    asyncio.run(api_store.enqueue_job(JobCreate(job_type=JobType.EVALUATE)))

    response = api_client.get("/admin/queue/health", headers=login("admin"))

    assert response.status_code == 200
    body = response.json()
    assert body["stats"][JobStatus.PENDING.value] == 1
    assert body["alerts"] == []
    assert body["pool"] is None


def test_policy_upsert_and_resolution(api_client: TestClient, login) -> None:
    admin = login("admin")
    upserted = api_client.put(
        "/admin/approval-policies",
        json={"risk_level": "medium", "site_id": "site-1", "required_role": "expert", "requires_expert_signoff": True},
        headers=admin,
    )
    assert upserted.status_code == 200
    policy_id = upserted.json()["id"]

    rejected = api_client.put(
        "/admin/approval-policies",
        json={"risk_level": "medium", "required_role": "viewer"},
        headers=admin,
    )
    assert rejected.status_code == 422

    article = api_client.post(
        "/articles",
        json={"site_id": "site-1", "title": "Solar Loan Rates", "risk_level": "medium", "first_stage": "none"},
        headers=admin,
    ).json()["article"]
    resolved = api_client.get(f"/admin/articles/{article['id']}/policy", headers=admin)
    assert resolved.status_code == 200
    assert resolved.json()["source"] == "site_risk"
    assert resolved.json()["policy_id"] == policy_id
    assert resolved.json()["required_role"] == "expert"

    policies = api_client.get("/admin/approval-policies", headers=admin).json()
    assert [policy["id"] for policy in policies] == [policy_id]


def test_qa_template_upsert(api_client: TestClient, login) -> None:
    admin = login("admin")
    payload = {
        "name": "Calculator review",
        "content_type": "calculator",
        "risk_level": "high",
        "items": [
            {"id": "formula", "label": "Formula matches source", "required": True},
            {"id": "calc_tested", "label": "Test run attached", "evidence_fields": ["test_run_id", "harness_version"]},
        ],
    }

    saved = api_client.put("/admin/qa-templates/calc-high", json=payload, headers=admin)
    assert saved.status_code == 200
    assert saved.json()["items"][1]["evidence_fields"] == ["test_run_id", "harness_version"]

    builtin = api_client.put("/admin/qa-templates/default:high", json=payload, headers=admin)
    assert builtin.status_code == 422

    templates = api_client.get("/admin/qa-templates", headers=admin).json()
    assert [template["id"] for template in templates] == ["calc-high"]
