from tutor_rag_core.events import StageEventMessage, stage_idempotency_key
from tutor_rag_core.models import StageEvent


def test_idempotency_key_differs_between_runs() -> None:
    event = StageEvent(
        document_id="doc1",
        stage="embedding",
        status="in_progress",
        progress_percent=65,
        message="Embedded 5/10 pages",
    )
    a = StageEventMessage.from_event(event)
    b = StageEventMessage.from_event(event)
    assert a.event_id != b.event_id
    assert stage_idempotency_key(a) != stage_idempotency_key(b)
    assert stage_idempotency_key(a) == f"doc1:embedding:in_progress:65:{a.event_id}"
    assert stage_idempotency_key(a) == stage_idempotency_key(a.model_copy())


def test_message_subject_follows_stage() -> None:
    msg = StageEventMessage.from_event(
        StageEvent(
            document_id="doc1",
            stage="extraction",
            status="failed",
            progress_percent=0,
            message="boom",
            error={"stage": "extraction", "message": "boom"},
        )
    )
    assert msg.subject == "docs.stage.extraction"
    assert msg.error == {"stage": "extraction", "message": "boom"}
    assert '"document_id":"doc1"' in msg.model_dump_json()
