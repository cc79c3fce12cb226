from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tutor_rag_core.rate_limit import RateLimitDecision
    from tutor_rag_core.validation import ValidationIssue


class TutorRagError(Exception):
    # Set by the query service once a request has been admitted, so callers can
    # always render rate-limit headers.
    rate_limit: RateLimitDecision | None = None


class ValidationError(TutorRagError):
    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        super().__init__("; ".join(i.message for i in issues) or "Invalid input")


class ConflictError(TutorRagError):
    def __init__(self, message: str, *, existing_id: str):
        self.existing_id = existing_id
        super().__init__(message)


class QuotaExceededError(TutorRagError):
    def __init__(self, *, current: int, limit: int):
        self.current = current
        self.limit = limit
        super().__init__(f"Upload limit reached ({current}/{limit})")


class DocumentNotFound(TutorRagError):
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class NotReadyError(TutorRagError):
    def __init__(self, document_id: str, status: str):
        self.document_id = document_id
        self.status = status
        super().__init__(f"Document {document_id} is not ready (status={status})")


class InvalidStatusTransition(TutorRagError):
    def __init__(self, document_id: str, current: str | None, target: str):
        self.document_id = document_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move document {document_id} from {current} to {target}")


class DuplicateContentHash(TutorRagError):
    """Raised when a second original with an already-catalogued hash is inserted."""

    def __init__(self, content_hash: str):
        self.content_hash = content_hash
        super().__init__(f"An original document with hash {content_hash} already exists")


class StageFailure(TutorRagError):
    def __init__(self, stage: str, message: str, *, details: dict[str, Any] | None = None):
        self.stage = stage
        self.details = details
        super().__init__(message)


class EnqueueError(TutorRagError):
    pass


class BackendUnavailable(TutorRagError):
    pass


class RateLimitExceeded(TutorRagError):
    def __init__(self, decision: RateLimitDecision):
        self.rate_limit = decision
        super().__init__(
            f"Rate limit exceeded. Please try again in {decision.retry_after} seconds."
        )
