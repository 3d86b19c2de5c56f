from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import Response

from sitefleet.api.errors import http_error
from sitefleet.services.errors import RepositoryError
from sitefleet.services.idempotency import Replay

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replayed"

RouteAction = Callable[[], Awaitable[tuple[int, Any]]]


def render_json(content: Any) -> str:
    return json.dumps(jsonable_encoder(content), separators=(",", ":"), ensure_ascii=False)


async def run_idempotent(
    repository,
    request: Request,
    key: str | None,
    action: RouteAction,
) -> Response:
    """Run a mutating route action at most once per Idempotency-Key.

    Responses below 500 (including 4xx errors) are stored and replayed
    byte-for-byte. A 5xx or an unexpected exception releases the key so the
    client may retry.
    """
    if key is None:
        status_code, content = await action()
        return _json_response(status_code, render_json(content))

    method = request.method.upper()
    path = request.url.path
    try:
        decision = await repository.begin_idempotent(key, method=method, path=path)
    except RepositoryError as exc:
        raise http_error(exc) from exc

    if isinstance(decision, Replay):
        logger.info("idempotent replay key=%s method=%s path=%s", key, method, path)
        return _json_response(decision.status_code, decision.body, replayed=True)

    try:
        status_code, content = await action()
        body = render_json(content)
    except HTTPException as exc:
        if exc.status_code >= 500:
            await repository.release_idempotent(decision)
            raise
        status_code, body = exc.status_code, render_json({"detail": exc.detail})
    except BaseException:
        await repository.release_idempotent(decision)
        raise

    if status_code >= 500:
        await repository.release_idempotent(decision)
    else:
        await repository.complete_idempotent(decision, status_code=status_code, body=body)
    return _json_response(status_code, body)


def _json_response(status_code: int, body: str, *, replayed: bool = False) -> Response:
    headers = {REPLAY_HEADER: "true"} if replayed else None
    return Response(content=body, status_code=status_code, media_type="application/json", headers=headers)
