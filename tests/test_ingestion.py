import asyncio
from collections.abc import Awaitable, Callable

import pytest

from fakes import System, make_system
from tutor_rag_core.errors import (
    ConflictError,
    DocumentNotFound,
    NotReadyError,
    QuotaExceededError,
    ValidationError,
)
from tutor_rag_core.extraction import PlainTextExtractor
from tutor_rag_core.ingestion import IngestionService, UploadRequest, estimate_savings
from tutor_rag_core.models import (
    ACCESS_PUBLIC,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_READY,
    UNLIMITED,
    Document,
)
from tutor_rag_core.util import content_hash

BOOK = b"Biology textbook bytes"


def _upload(owner: str, data: bytes = BOOK, role: str = "student") -> UploadRequest:
    return UploadRequest(data=data, filename="biology.txt", owner_id=owner, role=role)


def _run(system: System, fn: Callable[[], Awaitable[None]]) -> None:
    async def main() -> None:
        system.workers.start()
        try:
            await fn()
        finally:
            await system.workers.stop()

    asyncio.run(main())


def test_estimate_savings() -> None:
    s = estimate_savings(25, cost_per_page=0.0001)
    assert (s.pages, s.embedding_cost, s.processing_minutes) == (25, 0.0025, 3)
    assert estimate_savings(None, cost_per_page=0.0001).pages == 0


def test_new_upload_is_stored_and_processed() -> None:
    system = make_system()

    async def scenario() -> None:
        result = await system.ingestion.upload(_upload("alice"))
        assert (result.status, result.duplicate, result.savings) == (STATUS_PROCESSING, False, None)
        await system.workers.join()
        doc = system.catalog.docs[result.document_id]
        assert doc.status == STATUS_READY
        assert doc.content_hash == content_hash(BOOK)
        assert doc.title == "biology"
        assert system.store.objects[doc.storage_ref] == BOOK
        assert doc.storage_ref.startswith(f"mem://documents/{doc.document_id}/")

    _run(system, scenario)


def test_duplicate_upload_grants_reference_without_reprocessing() -> None:
    system = make_system()

    async def scenario() -> None:
        original = await system.ingestion.upload(_upload("alice"))
        await system.workers.join()

        ref = await system.ingestion.upload(_upload("bob"))
        assert ref.duplicate is True
        assert ref.status == STATUS_READY
        assert ref.original_id == original.document_id
        assert ref.savings == estimate_savings(4, cost_per_page=0.0001)

        stored = system.catalog.docs[ref.document_id]
        orig = system.catalog.docs[original.document_id]
        assert stored.duplicate_of == orig.document_id
        assert stored.canonical_id == orig.document_id
        assert (stored.page_count, stored.storage_ref) == (4, orig.storage_ref)

        with pytest.raises(ConflictError) as again:
            await system.ingestion.upload(_upload("bob"))
        assert again.value.existing_id == ref.document_id

        with pytest.raises(ConflictError) as own:
            await system.ingestion.upload(_upload("alice"))
        assert own.value.existing_id == original.document_id

    _run(system, scenario)

    assert system.extractor.calls == ["biology.txt"]
    assert len(system.store.objects) == 1
    assert len([d for d in system.catalog.docs.values() if d.duplicate_of is None]) == 1


def test_reference_to_document_still_processing_is_not_queryable_yet() -> None:
    system = make_system()

    async def scenario() -> None:
        await system.ingestion.upload(_upload("alice"))
        ref = await system.ingestion.upload(_upload("bob"))
        with pytest.raises(NotReadyError):
            await system.engine.resolve(ref.document_id)
        await system.workers.join()
        resolved = await system.engine.resolve(ref.document_id)
        assert resolved.document_id == ref.original_id

    _run(system, scenario)


def test_upload_quota_is_enforced_per_role() -> None:
    system = make_system()

    async def scenario() -> None:
        for i in range(3):
            await system.ingestion.upload(_upload("sam", data=f"book {i}".encode()))
        with pytest.raises(QuotaExceededError) as exc:
            await system.ingestion.upload(_upload("sam", data=b"book 3"))
        assert (exc.value.current, exc.value.limit) == (3, 3)

        # Quota applies before deduplication.
        await system.ingestion.upload(_upload("alice"))
        with pytest.raises(QuotaExceededError):
            await system.ingestion.upload(_upload("sam"))

        teacher = await system.ingestion.upload(_upload("sam", data=b"book 3", role="teacher"))
        assert teacher.duplicate is False
        await system.workers.join()

        view = await system.ingestion.quota("sam", "teacher")
        assert (view.current, view.limit, view.remaining, view.percentage) == (4, 5, 1, 80.0)
        admin = await system.ingestion.quota("root", "admin")
        assert (admin.limit, admin.remaining) == (UNLIMITED, UNLIMITED)

    _run(system, scenario)


def test_failed_documents_do_not_count_against_quota() -> None:
    system = make_system()
    system.catalog.seed(
        Document(document_id="f1", content_hash="x", owner_id="sam", status=STATUS_FAILED)
    )
    assert asyncio.run(system.ingestion.quota("sam", "student")).current == 0


def test_invalid_upload_is_rejected_before_anything_is_stored() -> None:
    system = make_system()
    with pytest.raises(ValidationError) as exc:
        asyncio.run(system.ingestion.upload(_upload("alice", data=b"")))
    assert [i.code for i in exc.value.issues] == ["file_empty"]
    assert system.store.objects == {}


def test_lost_insert_race_becomes_reference() -> None:
    system = make_system()
    digest = content_hash(BOOK)
    system.catalog.seed(
        Document(
            document_id="winner",
            content_hash=digest,
            owner_id="alice",
            status=STATUS_READY,
            page_count=7,
            storage_ref="mem://documents/winner/x.txt",
        )
    )
    system.catalog.stale_lookups.add(digest)

    async def scenario() -> None:
        result = await system.ingestion.upload(_upload("bob"))
        assert result.duplicate is True
        assert result.original_id == "winner"
        assert result.savings.pages == 7

    _run(system, scenario)

    assert len(system.store.deleted) == 1
    assert system.store.deleted[0].startswith("mem://documents/")
    assert system.store.objects == {}
    assert system.extractor.calls == []


def test_duplicate_of_failed_original_requeues_it() -> None:
    system = make_system()
    digest = content_hash(BOOK)
    system.store.objects["mem://documents/orig/a.txt"] = BOOK
    system.catalog.seed(
        Document(
            document_id="orig",
            content_hash=digest,
            owner_id="alice",
            status=STATUS_FAILED,
            storage_ref="mem://documents/orig/a.txt",
            filename="biology.txt",
        )
    )

    async def scenario() -> None:
        ref = await system.ingestion.upload(_upload("bob"))
        assert ref.duplicate is True
        assert ref.original_id == "orig"
        await system.workers.join()

    _run(system, scenario)

    orig = system.catalog.docs["orig"]
    assert (orig.status, orig.content_version) == (STATUS_READY, 2)


def test_owner_reuploading_failed_original_gets_it_back() -> None:
    system = make_system()
    system.catalog.seed(
        Document(
            document_id="orig",
            content_hash=content_hash(BOOK),
            owner_id="alice",
            status=STATUS_FAILED,
            filename="biology.txt",
        )
    )

    async def scenario() -> None:
        result = await system.ingestion.upload(_upload("alice"))
        assert (result.document_id, result.duplicate) == ("orig", False)
        assert result.status == STATUS_PROCESSING
        await system.workers.join()

    _run(system, scenario)

    assert system.catalog.docs["orig"].status == STATUS_READY


def test_add_existing_public_document() -> None:
    system = make_system()
    system.catalog.seed(
        Document(
            document_id="pub",
            content_hash="h-pub",
            owner_id="teacher-1",
            status=STATUS_READY,
            page_count=120,
            access_scope=ACCESS_PUBLIC,
        )
    )
    system.catalog.seed(
        Document(
            document_id="priv", content_hash="h-priv", owner_id="teacher-1", status=STATUS_READY
        )
    )

    async def scenario() -> None:
        result = await system.ingestion.add_existing(owner_id="sam", document_id="pub")
        assert result.duplicate is True
        assert result.savings.processing_minutes == 12
        ref = system.catalog.docs[result.document_id]
        assert ref.access_scope == "personal"
        with pytest.raises(ConflictError):
            await system.ingestion.add_existing(owner_id="sam", document_id="pub")
        with pytest.raises(DocumentNotFound):
            await system.ingestion.add_existing(owner_id="sam", document_id="priv")
        with pytest.raises(DocumentNotFound):
            await system.ingestion.add_existing(owner_id="sam", document_id="nope")

    asyncio.run(scenario())


def test_add_existing_requires_processed_original() -> None:
    system = make_system()
    system.catalog.seed(
        Document(
            document_id="pub",
            content_hash="h-pub",
            owner_id="teacher-1",
            status=STATUS_PROCESSING,
            access_scope=ACCESS_PUBLIC,
        )
    )
    with pytest.raises(NotReadyError):
        asyncio.run(system.ingestion.add_existing(owner_id="sam", document_id="pub"))


def test_upload_types_follow_the_configured_extractor() -> None:
    system = make_system()
    extractor = PlainTextExtractor()
    ingestion = IngestionService(
        catalog=system.catalog,
        object_store=system.store,
        workers=system.workers,
        supported_extensions=extractor.supported_extensions,
        supported_mime_types=extractor.supported_mime_types,
    )

    async def scenario() -> None:
        with pytest.raises(ValidationError) as exc:
            await ingestion.upload(
                UploadRequest(
                    data=b"%PDF-1.7",
                    filename="bio.pdf",
                    owner_id="alice",
                    mime_type="application/pdf",
                )
            )
        assert [i.code for i in exc.value.issues] == ["unsupported_type"]
        assert exc.value.issues[0].details["supported"] == ["md", "text", "txt"]

        notes = await ingestion.upload(
            UploadRequest(data=b"# Cells\nMembranes", filename="notes.md", owner_id="alice")
        )
        assert notes.status == STATUS_PROCESSING

    _run(system, scenario)


def test_unknown_access_scope_is_rejected() -> None:
    system = make_system()
    req = UploadRequest(data=BOOK, filename="biology.txt", owner_id="alice", access_scope="world")
    with pytest.raises(ValidationError) as exc:
        asyncio.run(system.ingestion.upload(req))
    assert [i.code for i in exc.value.issues] == ["invalid_access_scope"]
