from __future__ import annotations


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class PolicyViolationError(RepositoryForbiddenError):
    """Raised when an editorial transition fails an approval-policy guard."""

    def __init__(self, guard: str, message: str) -> None:
        super().__init__(message)
        self.guard = guard


class QaValidationError(RepositoryValidationError):
    """Raised when a QA checklist submission is incomplete."""

    def __init__(
        self,
        message: str,
        *,
        missing_items: list[str] | None = None,
        unchecked_items: list[str] | None = None,
        unknown_items: list[str] | None = None,
        missing_evidence: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(message)
        self.missing_items = missing_items or []
        self.unchecked_items = unchecked_items or []
        self.unknown_items = unknown_items or []
        self.missing_evidence = missing_evidence or {}

    def as_detail(self) -> dict[str, object]:
        return {
            "error": str(self),
            "missing_items": self.missing_items,
            "unchecked_items": self.unchecked_items,
            "unknown_items": self.unknown_items,
            "missing_evidence": self.missing_evidence,
        }


class IdempotencyConflictError(RepositoryConflictError):
    """Raised when a request with the same idempotency key is still in flight."""


class IdempotencyKeyReuseError(RepositoryValidationError):
    """Raised when an idempotency key is replayed against a different endpoint."""


class PipelineError(Exception):
    """Base error raised while executing a claimed job."""


class JobPayloadError(PipelineError):
    """Raised when a job payload can never succeed; the job fails without retry."""


class CollaboratorError(PipelineError):
    """Raised when an external collaborator call fails transiently."""


class HandlerRegistryError(PipelineError):
    """Raised at startup when a job type has no registered handler."""
