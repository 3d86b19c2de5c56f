import hashlib
from dataclasses import dataclass
from enum import Enum

from sitefleet.core.types import ReviewerRole, role_at_least
from sitefleet.services.records import Actor

# Lowest editorial role granting each human scope; higher roles inherit it.
SCOPE_MINIMUM_ROLE: dict[str, ReviewerRole] = {
    "content:read": ReviewerRole.VIEWER,
    "content:write": ReviewerRole.EDITOR,
    "review:write": ReviewerRole.REVIEWER,
    "qa:write": ReviewerRole.REVIEWER,
    "expert:sign": ReviewerRole.EXPERT,
    "admin:write": ReviewerRole.ADMIN,
}


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


def role_scopes(role: ReviewerRole) -> set[str]:
    return {scope for scope, minimum in SCOPE_MINIMUM_ROLE.items() if role_at_least(role, minimum)}


def hash_api_key(api_key: str) -> str:
    """Worker module keys are stored and compared as sha256 hex digests."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: ReviewerRole | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def as_actor(self) -> Actor:
        """Editorial identity of a human principal."""
        if self.principal_type != PrincipalType.HUMAN or self.role is None:
            raise PermissionError("editorial actions require a human principal")
        return Actor(actor_id=self.actor_id or self.subject, role=self.role)
