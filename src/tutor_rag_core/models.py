from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_READY = "ready"
STATUS_FAILED = "failed"

# Allowed predecessors for each forward transition.
STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    STATUS_PROCESSING: (STATUS_PENDING,),
    STATUS_READY: (STATUS_PROCESSING,),
    STATUS_FAILED: (STATUS_PENDING, STATUS_PROCESSING),
}

STAGE_EXTRACTION = "extraction"
STAGE_EMBEDDING = "embedding"
STAGE_COMPLETION = "completion"

EVENT_STARTED = "started"
EVENT_IN_PROGRESS = "in_progress"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"

ACCESS_PERSONAL = "personal"
ACCESS_PUBLIC = "public"
ACCESS_CLASS = "class"
ACCESS_SCOPES = (ACCESS_PERSONAL, ACCESS_PUBLIC, ACCESS_CLASS)

# Stand-in for "no limit" that survives JSON round-trips.
UNLIMITED = 999_999_999


@dataclass(frozen=True)
class Document:
    document_id: str
    content_hash: str
    owner_id: str
    status: str = STATUS_PENDING
    page_count: int | None = None
    storage_ref: str | None = None
    duplicate_of: str | None = None

    title: str | None = None
    subject: str | None = None
    filename: str | None = None
    mime_type: str | None = None
    byte_size: int | None = None
    access_scope: str = ACCESS_PERSONAL
    content_version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None

    @property
    def is_reference(self) -> bool:
        return self.duplicate_of is not None

    @property
    def canonical_id(self) -> str:
        """
        The document whose chunks and vectors back this record.
        """
        return self.duplicate_of or self.document_id


@dataclass(frozen=True)
class Chunk:
    document_id: str
    sequence_number: int
    raw_text: str
    cleaned_text: str
    word_count: int
    vector_id: str | None = None
    has_images: bool = False
    has_tables: bool = False
    has_equations: bool = False

    @property
    def page_number(self) -> int:
        return self.sequence_number


@dataclass(frozen=True)
class StageEvent:
    document_id: str
    stage: str
    status: str
    progress_percent: int
    message: str
    error: dict[str, Any] | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Source:
    page: int | None
    snippet: str
    score: float


@dataclass(frozen=True)
class QueryResult:
    answer: str
    sources: list[Source]
    tokens_used: int
    model: str | None = None
    conversation_id: str | None = None


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
