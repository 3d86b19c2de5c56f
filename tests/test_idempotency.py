from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from sitefleet.services.errors import (
    IdempotencyConflictError,
    IdempotencyKeyReuseError,
    RepositoryValidationError,
)
from sitefleet.services.idempotency import Proceed, Replay
from sitefleet.services.store import InMemoryStore

ENQUEUE_BODY = {"job_type": "analytics_fetch", "site_id": "site-1", "payload": {"site_id": "site-1"}}


def test_key_lifecycle(store: InMemoryStore, clock) -> None:
    async def scenario():
        first = await store.begin_idempotent("key-1", method="POST", path="/admin/jobs")
        with pytest.raises(IdempotencyConflictError):
            await store.begin_idempotent("key-1", method="POST", path="/admin/jobs")
        await store.complete_idempotent(first, status_code=201, body='{"id":"job-1"}')
        replay = await store.begin_idempotent("key-1", method="POST", path="/admin/jobs")
        with pytest.raises(IdempotencyKeyReuseError):
            await store.begin_idempotent("key-1", method="POST", path="/admin/jobs/job-1/cancel")
        clock.advance(hours=25)
        expired = await store.begin_idempotent("key-1", method="POST", path="/admin/jobs")
        return first, replay, expired

    first, replay, expired = asyncio.run(scenario())
    assert isinstance(first, Proceed)
    assert replay == Replay(status_code=201, body='{"id":"job-1"}')
    assert isinstance(expired, Proceed)


def test_released_key_can_be_retried(store: InMemoryStore) -> None:
    async def scenario():
        token = await store.begin_idempotent("key-2", method="POST", path="/jobs/claim")
        await store.release_idempotent(token)
        return await store.begin_idempotent("key-2", method="POST", path="/jobs/claim")

    assert isinstance(asyncio.run(scenario()), Proceed)


def test_invalid_keys_are_rejected(store: InMemoryStore) -> None:
    async def scenario():
        for key in ("", "has space", "x" * 256):
            with pytest.raises(RepositoryValidationError):
                await store.begin_idempotent(key, method="POST", path="/admin/jobs")

    asyncio.run(scenario())


def test_purge_removes_expired_keys(store: InMemoryStore, clock) -> None:
    async def scenario():
        done = await store.begin_idempotent("done", method="POST", path="/admin/jobs")
        await store.complete_idempotent(done, status_code=201, body="{}")
        await store.begin_idempotent("stuck", method="POST", path="/admin/jobs")
        clock.advance(minutes=10)
        early = await store.purge_expired_idempotency_keys()
        clock.advance(hours=24)
        late = await store.purge_expired_idempotency_keys()
        return early, late

    early, late = asyncio.run(scenario())
    assert early == 1
    assert late == 1


def test_replay_returns_identical_bytes(api_client: TestClient, api_store: InMemoryStore, login) -> None:
    headers = {**login("admin"), "Idempotency-Key": "enqueue-1"}

    first = api_client.post("/admin/jobs", json=ENQUEUE_BODY, headers=headers)
    second = api_client.post("/admin/jobs", json=ENQUEUE_BODY, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.content == first.content
    assert second.headers["Idempotent-Replayed"] == "true"
    assert "Idempotent-Replayed" not in first.headers
    assert len(api_store.jobs) == 1


def test_client_errors_are_replayed(api_client: TestClient, login) -> None:
    headers = {**login("admin"), "Idempotency-Key": "cancel-missing"}

    first = api_client.post("/admin/jobs/00000000-0000-0000-0000-000000000000/cancel", headers=headers)
    second = api_client.post("/admin/jobs/00000000-0000-0000-0000-000000000000/cancel", headers=headers)

    assert first.status_code == 404
    assert second.status_code == 404
    assert second.content == first.content
    assert second.headers["Idempotent-Replayed"] == "true"


def test_in_flight_and_reused_keys(api_client: TestClient, api_store: InMemoryStore, login) -> None:
    headers = login("admin")
    asyncio.run(api_store.begin_idempotent("busy-1", method="POST", path="/admin/jobs"))

    in_flight = api_client.post("/admin/jobs", json=ENQUEUE_BODY, headers={**headers, "Idempotency-Key": "busy-1"})
    assert in_flight.status_code == 409

    created = api_client.post("/admin/jobs", json=ENQUEUE_BODY, headers={**headers, "Idempotency-Key": "reuse-1"})
    assert created.status_code == 201
    job_id = created.json()["id"]
    reused = api_client.post(f"/admin/jobs/{job_id}/cancel", headers={**headers, "Idempotency-Key": "reuse-1"})
    assert reused.status_code == 422

    invalid = api_client.post("/admin/jobs", json=ENQUEUE_BODY, headers={**headers, "Idempotency-Key": "bad key"})
    assert invalid.status_code == 422
    assert len(api_store.jobs) == 1
