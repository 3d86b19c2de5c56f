from __future__ import annotations

import logging
from typing import Any

import httpx

from sitefleet.core.types import JobType
from sitefleet.services.errors import CollaboratorError, JobPayloadError

logger = logging.getLogger(__name__)

PERMANENT_STATUS_CODES = {400, 404, 409, 422}


class CollaboratorClient:
    """JSON client for the content generator and the external task runner."""

    def __init__(
        self,
        base_url: str | None,
        api_key: str | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def generate(self, stage: JobType, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._post(f"/generate/{stage.value}", payload)

    async def execute(self, job_type: JobType, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._post(f"/tasks/{job_type.value}", payload)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.base_url:
            raise CollaboratorError("SF_WORKER_COLLABORATOR_BASE_URL is required")

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"collaborator request failed: {exc}") from exc

        if response.status_code in PERMANENT_STATUS_CODES:
            raise JobPayloadError(f"collaborator rejected {path} with status {response.status_code}: {_detail(response)}")
        if response.status_code >= 400:
            raise CollaboratorError(f"collaborator {path} returned status {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise CollaboratorError(f"collaborator {path} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise CollaboratorError(f"collaborator {path} returned a non-object body")
        return body


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return str(body)[:200]
