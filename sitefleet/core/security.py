"""Request principals for worker modules (API keys) and editorial users (Supabase sessions)."""

import hmac
from typing import Any, Iterable

import httpx
from fastapi import Depends, Header, HTTPException, status

from sitefleet.core.auth import Principal, PrincipalType, hash_api_key, role_scopes
from sitefleet.core.config import Settings, get_settings
from sitefleet.core.types import ReviewerRole
from sitefleet.services.errors import RepositoryUnavailableError
from sitefleet.services.records import MachineCredentialRecord
from sitefleet.services.repository import get_repository

# The pipeline role belongs to the worker; app_metadata can never grant it.
CLAIMABLE_ROLES = frozenset(role for role in ReviewerRole if role != ReviewerRole.SYSTEM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _unavailable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise _unauthorized(f"machine auth requires {settings.api_key_header} and X-Module-Id")

    try:
        credentials = await repository.get_machine_credentials(x_module_id)
    except RepositoryUnavailableError as exc:
        raise _unavailable(str(exc)) from exc

    credential = match_module_credential(credentials, x_api_key)
    if credential is None:
        raise _unauthorized("invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=credential.module_id,
        scopes=set(credential.scopes),
        actor_id=credential.module_db_id,
    )


def match_module_credential(
    credentials: Iterable[MachineCredentialRecord], api_key: str
) -> MachineCredentialRecord | None:
    """Find the credential holding this key; a module keeps several while a key is rotated."""
    key_hash = hash_api_key(api_key)
    return next((item for item in credentials if hmac.compare_digest(item.key_hash, key_hash)), None)


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    token = _bearer_token(authorization)
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise _unavailable("Supabase auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise _unauthorized("invalid bearer token")

    role = resolve_reviewer_role(user)
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=role_scopes(role),
        actor_id=user_id,
    )


def resolve_reviewer_role(user: dict[str, Any]) -> ReviewerRole:
    """Editorial role granted in Supabase app_metadata.

    user_metadata is writable by the user and never consulted. Missing or
    unknown roles read as viewer.
    """
    app_metadata = user.get("app_metadata")
    claimed = app_metadata.get("role") if isinstance(app_metadata, dict) else None
    try:
        role = ReviewerRole(claimed)
    except ValueError:
        return ReviewerRole.VIEWER
    return role if role in CLAIMABLE_ROLES else ReviewerRole.VIEWER


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise _unauthorized("human auth requires bearer token")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key})
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise _unavailable("Supabase auth verification unavailable") from exc

    if response.status_code in {401, 403}:
        raise _unauthorized("invalid bearer token")
    if response.status_code != 200:
        raise _unavailable("Supabase auth verification failed")
    user = response.json()
    if not isinstance(user, dict):
        raise _unauthorized("invalid bearer token")
    return user
