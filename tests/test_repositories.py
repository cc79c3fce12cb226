from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from fakes import FakeEmbedder, FakeExtractor, FakeObjectStore, FakeVectorIndex
from tutor_rag_core.errors import ConflictError, DuplicateContentHash, InvalidStatusTransition
from tutor_rag_core.ingestion import IngestionService, UploadRequest
from tutor_rag_core.models import Chunk, ConversationTurn, Document, StageEvent
from tutor_rag_core.pipeline import PipelineJob, ProcessingPipeline
from tutor_rag_core.repositories import (
    ChunkRepository,
    ConversationRepository,
    DocumentRepository,
    StageEventRepository,
)


def _original(owner: str = "alice") -> Document:
    return Document(
        document_id=str(uuid4()),
        content_hash=uuid4().hex,
        owner_id=owner,
        status="processing",
        storage_ref="s3://bucket/documents/x.pdf",
        filename="x.pdf",
    )


def test_documents_dedup_constraints(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        docs = DocumentRepository(pool)
        original = await docs.create_document(_original())
        assert original.created_at is not None
        assert await docs.find_original_by_hash(original.content_hash) == original

        with pytest.raises(DuplicateContentHash):
            await docs.create_document(
                Document(
                    document_id=str(uuid4()), content_hash=original.content_hash, owner_id="eve"
                )
            )

        ref = await docs.create_document(
            Document(
                document_id=str(uuid4()),
                content_hash=original.content_hash,
                owner_id="bob",
                status="ready",
                duplicate_of=original.document_id,
            )
        )
        assert (await docs.find_reference(owner_id="bob", original_id=original.document_id)) == ref
        with pytest.raises(ConflictError) as exc:
            await docs.create_document(
                Document(
                    document_id=str(uuid4()),
                    content_hash=original.content_hash,
                    owner_id="bob",
                    status="ready",
                    duplicate_of=original.document_id,
                )
            )
        assert exc.value.existing_id == ref.document_id
        assert await docs.find_original_by_hash(original.content_hash) == original

    with_pool(run)


def test_documents_status_transitions(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        docs = DocumentRepository(pool)
        doc = await docs.create_document(_original(owner="carol"))
        assert await docs.count_owned("carol") == 1

        ready = await docs.advance_status(doc.document_id, "ready", page_count=12)
        assert (ready.status, ready.page_count) == ("ready", 12)
        assert ready.processed_at is not None

        with pytest.raises(InvalidStatusTransition):
            await docs.advance_status(doc.document_id, "failed")

        again = await docs.reset_for_reprocessing(doc.document_id)
        assert (again.status, again.content_version, again.page_count) == ("processing", 2, None)

        await docs.advance_status(doc.document_id, "failed")
        assert await docs.count_owned("carol") == 0

    with_pool(run)


def test_chunks_track_vector_ids(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        doc = await DocumentRepository(pool).create_document(_original())
        chunks = ChunkRepository(pool)
        await chunks.replace_chunks(
            document_id=doc.document_id,
            chunks=[
                Chunk(
                    document_id=doc.document_id,
                    sequence_number=n,
                    raw_text=f"Header\npage {n}",
                    cleaned_text=f"page {n}",
                    word_count=2,
                    has_equations=n == 2,
                )
                for n in (1, 2, 3)
            ],
        )
        await chunks.set_vector_id(document_id=doc.document_id, sequence_number=2, vector_id="v2")

        assert [c.sequence_number for c in await chunks.list_unindexed(doc.document_id)] == [1, 3]
        [page2] = await chunks.get_chunks(doc.document_id, [2, 2])
        assert (page2.vector_id, page2.has_equations) == ("v2", True)
        assert page2.raw_text == "Header\npage 2"

        await chunks.clear_vector_ids(doc.document_id)
        assert len(await chunks.list_unindexed(doc.document_id)) == 3

    with_pool(run)


def test_stage_events_are_append_only(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        doc = await DocumentRepository(pool).create_document(_original())
        events = StageEventRepository(pool)
        for status, progress in (("started", 0), ("completed", 30)):
            await events.append(
                StageEvent(
                    document_id=doc.document_id,
                    stage="extraction",
                    status=status,
                    progress_percent=progress,
                    message=status,
                )
            )
        await events.append(
            StageEvent(
                document_id=doc.document_id,
                stage="embedding",
                status="failed",
                progress_percent=0,
                message="boom",
                error={"stage": "embedding", "message": "boom"},
            )
        )

        listed = await events.list_events(doc.document_id)
        assert [(e.stage, e.status) for e in listed] == [
            ("extraction", "started"),
            ("extraction", "completed"),
            ("embedding", "failed"),
        ]
        latest = await events.latest_per_stage(doc.document_id)
        assert latest["extraction"].progress_percent == 30
        assert latest["embedding"].error == {"stage": "embedding", "message": "boom"}

    with_pool(run)


def test_conversation_turns_round_trip(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        doc = await DocumentRepository(pool).create_document(_original())
        convs = ConversationRepository(pool)
        conv_id = f"conv_{uuid4().hex}"
        for i in range(4):
            await convs.append_turns(
                conversation_id=conv_id,
                owner_id="alice",
                document_id=doc.document_id,
                turns=[
                    ConversationTurn(role="user", content=f"q{i}"),
                    ConversationTurn(role="assistant", content=f"a{i}", metadata={"pages": [i]}),
                ],
            )

        recent = await convs.get_turns(conv_id, limit=3)
        assert [t.content for t in recent] == ["a2", "q3", "a3"]
        assert recent[-1].metadata == {"pages": [3]}

    with_pool(run)


def test_conversation_content_with_nul_is_stored(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        doc = await DocumentRepository(pool).create_document(_original())
        convs = ConversationRepository(pool)
        conv_id = f"conv_{uuid4().hex}"
        await convs.append_turns(
            conversation_id=conv_id,
            owner_id="alice",
            document_id=doc.document_id,
            turns=[ConversationTurn(role="user", content="what is\x00 osmosis?")],
        )
        [turn] = await convs.get_turns(conv_id)
        assert turn.content == "what is  osmosis?"

    with_pool(run)


class _RecordingWorkers:
    def __init__(self) -> None:
        self.jobs: list[PipelineJob] = []

    async def enqueue(self, job: PipelineJob) -> bool:
        self.jobs.append(job)
        return True


def test_concurrent_identical_uploads_keep_one_original(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        docs = DocumentRepository(pool)
        workers = _RecordingWorkers()
        ingestion = IngestionService(
            catalog=docs, object_store=FakeObjectStore(), workers=workers  # type: ignore[arg-type]
        )
        data = f"Biology textbook {uuid4().hex}".encode()

        results = await asyncio.gather(
            ingestion.upload(UploadRequest(data=data, filename="bio.txt", owner_id="alice")),
            ingestion.upload(UploadRequest(data=data, filename="bio.txt", owner_id="bob")),
        )

        [original] = [r for r in results if not r.duplicate]
        [ref] = [r for r in results if r.duplicate]
        assert ref.original_id == original.document_id
        stored = await docs.get_document(original.document_id)
        assert stored is not None
        assert stored.duplicate_of is None
        assert [j.document_id for j in workers.jobs] == [original.document_id]

    with_pool(run)


def test_concurrent_pipelines_complete_independently(with_pool) -> None:  # noqa: ANN001
    async def run(pool) -> None:  # noqa: ANN001
        docs = DocumentRepository(pool)
        chunks = ChunkRepository(pool)
        pipeline = ProcessingPipeline(
            catalog=docs,
            chunks=chunks,
            events=StageEventRepository(pool),
            extractor=FakeExtractor(),
            embedder=FakeEmbedder(),
            index=FakeVectorIndex(),
            object_store=FakeObjectStore(),
        )
        a = await docs.create_document(_original("alice"))
        b = await docs.create_document(_original("bob"))

        results = await asyncio.gather(
            *(
                pipeline.run(PipelineJob(document_id=d.document_id, filename="x.txt", data=b"x"))
                for d in (a, b)
            )
        )

        assert [r.vectors_created for r in results] == [4, 4]
        for d in (a, b):
            done = await docs.get_document(d.document_id)
            assert (done.status, done.page_count) == ("ready", 4)
            assert await chunks.list_unindexed(d.document_id) == []

    with_pool(run)
