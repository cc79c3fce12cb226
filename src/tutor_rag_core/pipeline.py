from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from tutor_rag_core.chunking import build_chunks
from tutor_rag_core.config import Settings
from tutor_rag_core.errors import (
    DocumentNotFound,
    InvalidStatusTransition,
    NotReadyError,
    StageFailure,
)
from tutor_rag_core.interfaces import (
    ChunkStore,
    DocumentCatalog,
    Embedder,
    ObjectStore,
    StageEventLog,
    StageEventSink,
    TextExtractor,
    VectorIndex,
)
from tutor_rag_core.models import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_IN_PROGRESS,
    EVENT_STARTED,
    STAGE_COMPLETION,
    STAGE_EMBEDDING,
    STAGE_EXTRACTION,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_READY,
    Chunk,
    StageEvent,
)
from tutor_rag_core.qdrant import deterministic_point_id
from tutor_rag_core.util import sanitize_text, truncate_text

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200

PROGRESS_EXTRACTION_DONE = 30
PROGRESS_EMBEDDING_START = 40
PROGRESS_EMBEDDING_DONE = 90
PROGRESS_COMPLETE = 100


@dataclass(frozen=True)
class PipelineJob:
    document_id: str
    filename: str
    data: bytes | None = None
    storage_ref: str | None = None


@dataclass(frozen=True)
class PipelineResult:
    document_id: str
    total_pages: int
    vectors_created: int
    failed_chunks: int
    skipped_chunks: int


@dataclass(frozen=True)
class PipelineConfig:
    embed_batch_size: int = 10
    min_embed_chars: int = 50
    embed_timeout_s: float = 20.0
    index_timeout_s: float = 30.0
    storage_timeout_s: float = 60.0
    boilerplate_min_ratio: float = 0.6

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            embed_batch_size=settings.embed_batch_size,
            min_embed_chars=settings.min_embed_chars,
            embed_timeout_s=settings.embed_timeout_s,
            boilerplate_min_ratio=settings.boilerplate_min_ratio,
        )


@dataclass(frozen=True)
class _EmbedTally:
    created: int = 0
    failed: int = 0
    skipped: int = 0


def point_payload(chunk: Chunk) -> dict[str, Any]:
    return {
        "document_id": chunk.document_id,
        "page_number": chunk.page_number,
        "word_count": chunk.word_count,
        "has_images": chunk.has_images,
        "has_tables": chunk.has_tables,
        "has_equations": chunk.has_equations,
        "text_preview": truncate_text(sanitize_text(chunk.cleaned_text), PREVIEW_CHARS),
    }


class ProcessingPipeline:
    """
    extract -> clean -> embed -> index for one document at a time.

    Stage failures never propagate to the caller: the document is marked failed and a
    `failed` stage event records why.
    """

    def __init__(
        self,
        *,
        catalog: DocumentCatalog,
        chunks: ChunkStore,
        events: StageEventLog,
        extractor: TextExtractor,
        embedder: Embedder,
        index: VectorIndex,
        object_store: ObjectStore,
        sink: StageEventSink | None = None,
        config: PipelineConfig | None = None,
    ):
        self._catalog = catalog
        self._chunks = chunks
        self._events = events
        self._extractor = extractor
        self._embedder = embedder
        self._index = index
        self._store = object_store
        self._sink = sink
        self._cfg = config or PipelineConfig()
        if self._cfg.embed_batch_size <= 0:
            raise ValueError("embed_batch_size must be > 0")

    async def emit(
        self,
        document_id: str,
        stage: str,
        status: str,
        progress: int,
        message: str,
        *,
        error: dict[str, Any] | None = None,
    ) -> None:
        event = StageEvent(
            document_id=document_id,
            stage=stage,
            status=status,
            progress_percent=progress,
            message=message,
            error=error,
        )
        await self._events.append(event)
        if self._sink is not None:
            await self._sink.publish(event)

    async def run(self, job: PipelineJob) -> PipelineResult | None:
        doc = await self._catalog.get_document(job.document_id)
        if doc is None:
            logger.warning("pipeline job for unknown document_id=%s", job.document_id)
            return None
        if doc.status == STATUS_PENDING:
            await self._catalog.advance_status(doc.document_id, STATUS_PROCESSING)
        elif doc.status != STATUS_PROCESSING:
            logger.warning(
                "skipping pipeline job document_id=%s status=%s", doc.document_id, doc.status
            )
            return None

        logger.info("pipeline start document_id=%s", doc.document_id)
        try:
            chunks = await self._extract(job)
            tally = await self._embed(job.document_id, chunks)
            return await self._complete(job.document_id, len(chunks), tally)
        except StageFailure as e:
            await self.fail(job.document_id, e.stage, str(e), details=e.details)
            return None
        except Exception as e:  # noqa: BLE001
            # Anything not already classified happened while finishing up.
            logger.exception("pipeline crashed document_id=%s", job.document_id)
            await self.fail(job.document_id, STAGE_COMPLETION, f"{type(e).__name__}: {e}")
            return None

    async def fail(
        self,
        document_id: str,
        stage: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        logger.error("pipeline failed document_id=%s stage=%s error=%s", document_id, stage, message)
        try:
            await self._catalog.advance_status(document_id, STATUS_FAILED)
        except (InvalidStatusTransition, DocumentNotFound) as e:
            logger.warning("could not mark document failed document_id=%s: %s", document_id, e)
        error: dict[str, Any] = {"stage": stage, "message": message}
        if details:
            error["details"] = details
        await self.emit(document_id, stage, EVENT_FAILED, 0, message, error=error)

    async def _load_bytes(self, job: PipelineJob) -> bytes:
        if job.data is not None:
            return job.data
        if not job.storage_ref:
            raise StageFailure(STAGE_EXTRACTION, "Job has neither file bytes nor a storage ref")
        return await asyncio.wait_for(
            self._store.get(job.storage_ref), timeout=self._cfg.storage_timeout_s
        )

    async def _extract(self, job: PipelineJob) -> list[Chunk]:
        await self.emit(job.document_id, STAGE_EXTRACTION, EVENT_STARTED, 0, "Extracting text")
        try:
            data = await self._load_bytes(job)
            result = await self._extractor.extract(data, job.filename)
        except StageFailure:
            raise
        except Exception as e:  # noqa: BLE001
            raise StageFailure(STAGE_EXTRACTION, f"Extraction failed: {e}") from e
        if not result.pages:
            raise StageFailure(STAGE_EXTRACTION, "No text could be extracted from the document")

        chunks = build_chunks(
            document_id=job.document_id,
            pages=result.pages,
            min_ratio=self._cfg.boilerplate_min_ratio,
        )
        try:
            await self._chunks.replace_chunks(document_id=job.document_id, chunks=chunks)
        except Exception as e:  # noqa: BLE001
            raise StageFailure(STAGE_EXTRACTION, f"Could not store pages: {e}") from e
        await self.emit(
            job.document_id,
            STAGE_EXTRACTION,
            EVENT_COMPLETED,
            PROGRESS_EXTRACTION_DONE,
            f"Extracted {len(chunks)} pages",
        )
        return chunks

    async def _embed_one(self, chunk: Chunk) -> bool:
        try:
            vector = await asyncio.wait_for(
                self._embedder.embed(chunk.cleaned_text), timeout=self._cfg.embed_timeout_s
            )
            point_id = str(
                deterministic_point_id(document_id=chunk.document_id, page_number=chunk.page_number)
            )
            await asyncio.wait_for(
                self._index.upsert_points(
                    points=[{"id": point_id, "vector": vector, "payload": point_payload(chunk)}]
                ),
                timeout=self._cfg.index_timeout_s,
            )
            await self._chunks.set_vector_id(
                document_id=chunk.document_id,
                sequence_number=chunk.sequence_number,
                vector_id=point_id,
            )
            return True
        except Exception:  # noqa: BLE001
            logger.exception(
                "embedding failed document_id=%s page=%s", chunk.document_id, chunk.page_number
            )
            return False

    def _embeddable(self, chunks: list[Chunk]) -> list[Chunk]:
        return [c for c in chunks if len(c.cleaned_text.strip()) >= self._cfg.min_embed_chars]

    async def _embed_batches(
        self, document_id: str, chunks: list[Chunk], *, report_progress: bool
    ) -> tuple[int, int]:
        size = self._cfg.embed_batch_size
        batches = [chunks[i : i + size] for i in range(0, len(chunks), size)]
        created = 0
        failed = 0
        for n, batch in enumerate(batches, start=1):
            results = await asyncio.gather(*(self._embed_one(c) for c in batch))
            ok = sum(1 for r in results if r)
            created += ok
            failed += len(batch) - ok
            if report_progress:
                span = PROGRESS_EMBEDDING_DONE - PROGRESS_EMBEDDING_START
                await self.emit(
                    document_id,
                    STAGE_EMBEDDING,
                    EVENT_IN_PROGRESS,
                    PROGRESS_EMBEDDING_START + span * n // len(batches),
                    f"Embedded {created + failed}/{len(chunks)} pages",
                )
        return created, failed

    async def _embed(self, document_id: str, chunks: list[Chunk]) -> _EmbedTally:
        embeddable = self._embeddable(chunks)
        skipped = len(chunks) - len(embeddable)
        await self.emit(
            document_id,
            STAGE_EMBEDDING,
            EVENT_STARTED,
            PROGRESS_EMBEDDING_START,
            f"Embedding {len(embeddable)} pages",
        )
        if not embeddable:
            raise StageFailure(
                STAGE_EMBEDDING,
                "No pages had enough text to embed",
                details={"skipped": skipped},
            )

        created, failed = await self._embed_batches(document_id, embeddable, report_progress=True)
        if created == 0:
            raise StageFailure(
                STAGE_EMBEDDING,
                "All pages failed to embed",
                details={"failed": failed, "skipped": skipped},
            )
        await self.emit(
            document_id,
            STAGE_EMBEDDING,
            EVENT_COMPLETED,
            PROGRESS_EMBEDDING_DONE,
            f"Created {created} vectors ({failed} failed, {skipped} skipped)",
        )
        return _EmbedTally(created=created, failed=failed, skipped=skipped)

    async def _complete(
        self, document_id: str, total_pages: int, tally: _EmbedTally
    ) -> PipelineResult:
        await self._catalog.advance_status(document_id, STATUS_READY, page_count=total_pages)
        await self.emit(
            document_id,
            STAGE_COMPLETION,
            EVENT_COMPLETED,
            PROGRESS_COMPLETE,
            (
                f"Processed {total_pages} pages: {tally.created} vectors, "
                f"{tally.failed} failed, {tally.skipped} skipped"
            ),
        )
        logger.info(
            "pipeline done document_id=%s pages=%s vectors=%s failed=%s skipped=%s",
            document_id,
            total_pages,
            tally.created,
            tally.failed,
            tally.skipped,
        )
        return PipelineResult(
            document_id=document_id,
            total_pages=total_pages,
            vectors_created=tally.created,
            failed_chunks=tally.failed,
            skipped_chunks=tally.skipped,
        )

    async def retry_unindexed(self, document_id: str) -> PipelineResult:
        """
        Re-embed pages of a ready document whose earlier embedding failed.
        """
        doc = await self._catalog.get_document(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        if doc.is_reference:
            document_id = doc.canonical_id
            doc = await self._catalog.get_document(document_id)
            if doc is None:
                raise DocumentNotFound(document_id)
        if doc.status != STATUS_READY:
            raise NotReadyError(document_id, doc.status)

        pending = await self._chunks.list_unindexed(document_id)
        embeddable = self._embeddable(pending)
        created, failed = await self._embed_batches(document_id, embeddable, report_progress=False)
        skipped = len(pending) - len(embeddable)
        if embeddable:
            await self.emit(
                document_id,
                STAGE_EMBEDDING,
                EVENT_COMPLETED,
                PROGRESS_COMPLETE,
                f"Re-indexed {created} pages ({failed} failed)",
            )
        return PipelineResult(
            document_id=document_id,
            total_pages=doc.page_count or 0,
            vectors_created=created,
            failed_chunks=failed,
            skipped_chunks=skipped,
        )

    async def reprocess(self, document_id: str) -> PipelineResult | None:
        """
        Drop the document's vectors and run the whole pipeline again from the stored file.

        Bumps `content_version`, so answers cached for the previous content stop matching.
        """
        doc = await self._catalog.get_document(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        original_id = doc.canonical_id
        if original_id != doc.document_id:
            doc = await self._catalog.get_document(original_id)
            if doc is None:
                raise DocumentNotFound(original_id)
        if doc.status == STATUS_PROCESSING:
            raise InvalidStatusTransition(original_id, doc.status, STATUS_PROCESSING)

        await asyncio.wait_for(
            self._index.delete_points_for_document(document_id=original_id),
            timeout=self._cfg.index_timeout_s,
        )
        await self._chunks.clear_vector_ids(original_id)
        doc = await self._catalog.reset_for_reprocessing(original_id)
        logger.info(
            "reprocessing document_id=%s content_version=%s", original_id, doc.content_version
        )
        return await self.run(
            PipelineJob(
                document_id=original_id,
                filename=doc.filename or "document",
                storage_ref=doc.storage_ref,
            )
        )
