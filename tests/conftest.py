from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# Keep exporters and the Postgres pool out of unit tests; set before app modules import settings.
os.environ.setdefault("SF_OTEL_ENABLED", "false")
os.environ.setdefault("SF_WORKER_OTEL_ENABLED", "false")
os.environ.setdefault("SF_STORAGE_BACKEND", "memory")

from fastapi.testclient import TestClient  # noqa: E402

import sitefleet.core.security as security  # noqa: E402
from sitefleet.core.config import get_settings  # noqa: E402
from sitefleet.main import app  # noqa: E402
from sitefleet.services.repository import get_repository  # noqa: E402
from sitefleet.services.store import InMemoryStore  # noqa: E402


class ManualClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: ManualClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def approval_details() -> dict[str, Any]:
    return {
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


@pytest.fixture
def api_store(clock: ManualClock) -> InMemoryStore:
    store = InMemoryStore(clock=clock)
    store.register_machine_credential(
        module_id="local-worker",
        api_key="local-worker-key",
        scopes={"jobs:read", "jobs:write"},
    )
    store.register_machine_credential(module_id="local-reader", api_key="local-reader-key", scopes={"jobs:read"})
    return store


@pytest.fixture
def api_client(api_store: InMemoryStore) -> TestClient:
    os.environ["SF_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["SF_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()
    app.dependency_overrides[get_repository] = lambda: api_store

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("SF_SUPABASE_URL", None)
    os.environ.pop("SF_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


@pytest.fixture
def login(monkeypatch: pytest.MonkeyPatch):
    """Patch Supabase user lookup so the next requests run as the given editorial role."""

    def _login(role: str, user_id: str | None = None) -> dict[str, str]:
        user = {"id": user_id or f"{role}-1", "app_metadata": {"role": role}}

        async def _fake_fetch(**_: Any) -> dict[str, Any]:
            return user

        monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
        return {"Authorization": "Bearer token"}

    return _login
