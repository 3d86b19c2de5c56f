from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from sitefleet.services.errors import (
    IdempotencyConflictError,
    IdempotencyKeyReuseError,
    RepositoryValidationError,
)
from sitefleet.services.records import IdempotencyRecord

IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")
IDEMPOTENCY_KEY_MAX_LENGTH = 255
STATE_STARTED = "started"
STATE_COMPLETED = "completed"


@dataclass(slots=True, frozen=True)
class Replay:
    status_code: int
    body: str


@dataclass(slots=True, frozen=True)
class Proceed:
    key: str
    method: str
    path: str


def validate_idempotency_key(key: str) -> str:
    if not key or len(key) > IDEMPOTENCY_KEY_MAX_LENGTH or not IDEMPOTENCY_KEY_RE.match(key):
        raise RepositoryValidationError(
            f"Idempotency-Key must be 1-{IDEMPOTENCY_KEY_MAX_LENGTH} characters of letters, digits, '_' or '-'"
        )
    return key


def decide_existing(
    existing: IdempotencyRecord | None,
    *,
    method: str,
    path: str,
    now: datetime,
) -> Replay | None:
    """Return the stored response to replay, or None when the caller should proceed.

    Expired records are treated as absent; the caller overwrites them.
    """
    if existing is None or existing.expires_at <= now:
        return None
    if existing.method != method or existing.path != path:
        raise IdempotencyKeyReuseError(
            f"Idempotency-Key already used for {existing.method} {existing.path}"
        )
    if existing.state != STATE_COMPLETED or existing.status_code is None:
        raise IdempotencyConflictError("a request with this Idempotency-Key is still in progress")
    return Replay(status_code=existing.status_code, body=existing.response_body or "")


def started_record(*, key: str, method: str, path: str, now: datetime, ttl_seconds: int) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=key,
        method=method,
        path=path,
        state=STATE_STARTED,
        status_code=None,
        response_body=None,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
