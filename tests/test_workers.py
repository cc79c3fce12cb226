import asyncio

import pytest

from fakes import make_system
from tutor_rag_core.errors import EnqueueError
from tutor_rag_core.models import STATUS_FAILED, STATUS_PROCESSING, STATUS_READY, Document
from tutor_rag_core.pipeline import PipelineJob
from tutor_rag_core.workers import PipelineWorkerPool


def _seed(system, document_id: str) -> PipelineJob:  # noqa: ANN001
    system.catalog.seed(
        Document(
            document_id=document_id,
            content_hash=f"hash-{document_id}",
            owner_id="alice",
            status=STATUS_PROCESSING,
        )
    )
    return PipelineJob(document_id=document_id, filename="bio.txt", data=b"bytes")


def test_pool_requires_workers() -> None:
    system = make_system()
    with pytest.raises(ValueError):
        PipelineWorkerPool(system.pipeline, workers=0)


def test_pool_processes_queued_jobs() -> None:
    system = make_system()
    jobs = [_seed(system, f"doc-{i}") for i in range(3)]

    async def scenario() -> None:
        system.workers.start()
        try:
            for job in jobs:
                assert await system.workers.enqueue(job)
            await system.workers.join()
        finally:
            await system.workers.stop()
        assert not system.workers.started

    asyncio.run(scenario())

    assert {d.status for d in system.catalog.docs.values()} == {STATUS_READY}


def test_enqueue_is_idempotent_while_in_flight() -> None:
    system = make_system()
    job = _seed(system, "doc-1")

    async def scenario() -> None:
        system.workers.start()
        try:
            assert await system.workers.enqueue(job) is True
            assert system.workers.in_flight("doc-1")
            assert await system.workers.enqueue(job) is False
            await system.workers.join()
            assert not system.workers.in_flight("doc-1")
        finally:
            await system.workers.stop()

    asyncio.run(scenario())

    assert system.extractor.calls == ["bio.txt"]


def test_enqueue_without_workers_marks_document_failed() -> None:
    system = make_system()
    job = _seed(system, "doc-1")

    with pytest.raises(EnqueueError):
        asyncio.run(system.workers.enqueue(job))

    assert system.catalog.docs["doc-1"].status == STATUS_FAILED
    last = system.events.events[-1]
    assert (last.stage, last.status) == ("extraction", "failed")
    assert last.message == "Processing workers are not running"


def test_full_queue_rejects_job() -> None:
    system = make_system()
    pool = PipelineWorkerPool(system.pipeline, workers=1, queue_size=1)
    first = _seed(system, "doc-1")
    second = _seed(system, "doc-2")

    async def scenario() -> None:
        pool.start()
        try:
            assert await pool.enqueue(first)
            with pytest.raises(EnqueueError, match="queue is full"):
                await pool.enqueue(second)
            await pool.join()
        finally:
            await pool.stop()

    asyncio.run(scenario())

    assert system.catalog.docs["doc-1"].status == STATUS_READY
    assert system.catalog.docs["doc-2"].status == STATUS_FAILED
