from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from tutor_rag_core.models import StageEvent


class StageEventMessage(BaseModel):
    event_id: UUID = Field(default_factory=uuid4)
    event_type: str = Field(default="docs.stage")
    document_id: str
    stage: str
    status: str
    progress_percent: int
    message: str
    error: dict[str, Any] | None = None
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_event(cls, event: StageEvent) -> StageEventMessage:
        return cls(
            document_id=event.document_id,
            stage=event.stage,
            status=event.status,
            progress_percent=event.progress_percent,
            message=event.message,
            error=event.error,
            emitted_at=event.created_at or datetime.now(timezone.utc),
        )

    @property
    def subject(self) -> str:
        return f"docs.stage.{self.stage}"


def stage_idempotency_key(msg: StageEventMessage) -> str:
    # Used as Nats-Msg-Id: only a resend of the same message may be deduplicated.
    return f"{msg.document_id}:{msg.stage}:{msg.status}:{msg.progress_percent}:{msg.event_id}"
