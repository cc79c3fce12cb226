from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass

from tutor_rag_core.config import default_upload_limits
from tutor_rag_core.errors import (
    ConflictError,
    DocumentNotFound,
    DuplicateContentHash,
    NotReadyError,
    QuotaExceededError,
    ValidationError,
)
from tutor_rag_core.interfaces import DocumentCatalog, ObjectStore
from tutor_rag_core.models import (
    ACCESS_PERSONAL,
    ACCESS_PUBLIC,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_READY,
    UNLIMITED,
    Document,
)
from tutor_rag_core.pipeline import PipelineJob
from tutor_rag_core.rate_limit import normalize_role
from tutor_rag_core.storage.s3 import upload_key
from tutor_rag_core.util import content_hash, new_document_id
from tutor_rag_core.validation import SUPPORTED_EXTENSIONS, SUPPORTED_MIME_TYPES, validate_upload
from tutor_rag_core.workers import PipelineWorkerPool

logger = logging.getLogger(__name__)

PAGES_PER_PROCESSING_MINUTE = 10


@dataclass(frozen=True)
class UploadRequest:
    data: bytes
    filename: str
    owner_id: str
    role: str = "student"
    mime_type: str | None = None
    title: str | None = None
    subject: str | None = None
    access_scope: str = ACCESS_PERSONAL


@dataclass(frozen=True)
class Savings:
    pages: int
    embedding_cost: float
    processing_minutes: int


@dataclass(frozen=True)
class UploadResult:
    document_id: str
    status: str
    duplicate: bool
    savings: Savings | None = None
    original_id: str | None = None


@dataclass(frozen=True)
class QuotaView:
    current: int
    limit: int
    remaining: int
    percentage: float


def estimate_savings(pages: int | None, *, cost_per_page: float) -> Savings:
    n = pages or 0
    return Savings(
        pages=n,
        embedding_cost=round(n * cost_per_page, 6),
        processing_minutes=math.ceil(n / PAGES_PER_PROCESSING_MINUTE),
    )


def _default_title(filename: str) -> str:
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    return stem.strip() or "Untitled Document"


class IngestionService:
    """
    Upload entry point: validate, enforce the upload quota, deduplicate by content hash and
    either grant a reference to an existing original or store the file and queue processing.
    """

    def __init__(
        self,
        *,
        catalog: DocumentCatalog,
        object_store: ObjectStore,
        workers: PipelineWorkerPool,
        upload_limits: dict[str, int | None] | None = None,
        max_upload_bytes: int = 50 * 1024 * 1024,
        embedding_cost_per_page: float = 0.0001,
        storage_timeout_s: float = 60.0,
        supported_extensions: frozenset[str] = SUPPORTED_EXTENSIONS,
        supported_mime_types: frozenset[str] = SUPPORTED_MIME_TYPES,
    ):
        self._catalog = catalog
        self._store = object_store
        self._workers = workers
        self._limits = upload_limits if upload_limits is not None else default_upload_limits()
        self._max_bytes = max_upload_bytes
        self._cost_per_page = embedding_cost_per_page
        self._storage_timeout_s = storage_timeout_s
        self._extensions = supported_extensions
        self._mime_types = supported_mime_types

    def upload_limit(self, role: str | None) -> int | None:
        return self._limits.get(normalize_role(role))

    async def quota(self, owner_id: str, role: str | None) -> QuotaView:
        current = await self._catalog.count_owned(owner_id)
        limit = self.upload_limit(role)
        if limit is None:
            return QuotaView(current=current, limit=UNLIMITED, remaining=UNLIMITED, percentage=0.0)
        remaining = max(0, limit - current)
        percentage = round(current / limit * 100, 1) if limit else 100.0
        return QuotaView(current=current, limit=limit, remaining=remaining, percentage=percentage)

    async def _check_quota(self, owner_id: str, role: str | None) -> None:
        view = await self.quota(owner_id, role)
        if view.remaining <= 0:
            raise QuotaExceededError(current=view.current, limit=view.limit)

    async def upload(self, req: UploadRequest) -> UploadResult:
        issues = validate_upload(
            data=req.data,
            filename=req.filename,
            mime_type=req.mime_type,
            max_bytes=self._max_bytes,
            access_scope=req.access_scope,
            extensions=self._extensions,
            mime_types=self._mime_types,
        )
        if issues:
            raise ValidationError(issues)

        await self._check_quota(req.owner_id, req.role)

        digest = content_hash(req.data)
        original = await self._catalog.find_original_by_hash(digest)
        if original is not None:
            return await self._on_duplicate(req, original)

        document_id = new_document_id()
        key = upload_key(document_id=document_id, content_hash=digest, filename=req.filename)
        storage_ref = await asyncio.wait_for(
            self._store.put(key, req.data, content_type=req.mime_type),
            timeout=self._storage_timeout_s,
        )
        doc = Document(
            document_id=document_id,
            content_hash=digest,
            owner_id=req.owner_id,
            status=STATUS_PROCESSING,
            storage_ref=storage_ref,
            title=req.title or _default_title(req.filename),
            subject=req.subject,
            filename=req.filename,
            mime_type=req.mime_type,
            byte_size=len(req.data),
            access_scope=req.access_scope,
        )
        try:
            doc = await self._catalog.create_document(doc)
        except DuplicateContentHash:
            return await self._late_duplicate(req, digest, storage_ref)

        logger.info(
            "document accepted document_id=%s owner_id=%s bytes=%s",
            doc.document_id,
            doc.owner_id,
            doc.byte_size,
        )
        await self._workers.enqueue(
            PipelineJob(
                document_id=doc.document_id,
                filename=req.filename,
                data=req.data,
                storage_ref=storage_ref,
            )
        )
        return UploadResult(document_id=doc.document_id, status=doc.status, duplicate=False)

    async def _late_duplicate(
        self, req: UploadRequest, digest: str, storage_ref: str
    ) -> UploadResult:
        # Lost the insert race to a concurrent upload of the same bytes.
        logger.info("late duplicate detected content_hash=%s", digest)
        try:
            await self._store.delete(storage_ref)
        except Exception:  # noqa: BLE001
            logger.warning("could not delete orphaned upload ref=%s", storage_ref, exc_info=True)
        original = await self._catalog.find_original_by_hash(digest)
        if original is None:
            raise DocumentNotFound(digest)
        return await self._on_duplicate(req, original)

    async def _on_duplicate(self, req: UploadRequest, original: Document) -> UploadResult:
        if original.status == STATUS_FAILED:
            original = await self._revive(original, req)
            if original.owner_id == req.owner_id:
                return UploadResult(
                    document_id=original.document_id, status=original.status, duplicate=False
                )
        return await self._grant_reference(
            original,
            owner_id=req.owner_id,
            title=req.title,
            subject=req.subject,
            filename=req.filename,
            access_scope=req.access_scope,
        )

    async def _revive(self, original: Document, req: UploadRequest) -> Document:
        # A failed original would otherwise block this content forever.
        logger.info("re-queueing failed original document_id=%s", original.document_id)
        revived = await self._catalog.reset_for_reprocessing(original.document_id)
        await self._workers.enqueue(
            PipelineJob(
                document_id=revived.document_id,
                filename=revived.filename or req.filename,
                data=req.data,
                storage_ref=revived.storage_ref,
            )
        )
        return revived

    async def _grant_reference(
        self,
        original: Document,
        *,
        owner_id: str,
        title: str | None = None,
        subject: str | None = None,
        filename: str | None = None,
        access_scope: str = ACCESS_PERSONAL,
    ) -> UploadResult:
        if original.owner_id == owner_id:
            raise ConflictError(
                "Document is already in your collection", existing_id=original.document_id
            )
        existing = await self._catalog.find_reference(
            owner_id=owner_id, original_id=original.document_id
        )
        if existing is not None:
            raise ConflictError(
                "Document is already in your collection", existing_id=existing.document_id
            )

        ref = await self._catalog.create_document(
            Document(
                document_id=new_document_id(),
                content_hash=original.content_hash,
                owner_id=owner_id,
                status=STATUS_READY,
                page_count=original.page_count,
                storage_ref=original.storage_ref,
                duplicate_of=original.document_id,
                title=title or original.title,
                subject=subject or original.subject,
                filename=filename or original.filename,
                mime_type=original.mime_type,
                byte_size=original.byte_size,
                access_scope=access_scope,
                processed_at=original.processed_at,
            )
        )
        savings = estimate_savings(original.page_count, cost_per_page=self._cost_per_page)
        logger.info(
            "reference granted document_id=%s original_id=%s pages=%s saved_cost=%.4f "
            "saved_minutes=%s",
            ref.document_id,
            original.document_id,
            savings.pages,
            savings.embedding_cost,
            savings.processing_minutes,
        )
        return UploadResult(
            document_id=ref.document_id,
            status=ref.status,
            duplicate=True,
            savings=savings,
            original_id=original.document_id,
        )

    async def add_existing(self, *, owner_id: str, document_id: str) -> UploadResult:
        """
        Add a public, processed document to `owner_id`'s collection without uploading it.
        """
        doc = await self._catalog.get_document(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        original = doc
        if doc.is_reference:
            original = await self._catalog.get_document(doc.canonical_id)
            if original is None:
                raise DocumentNotFound(doc.canonical_id)
        if doc.access_scope != ACCESS_PUBLIC:
            raise DocumentNotFound(document_id)
        if original.status != STATUS_READY:
            raise NotReadyError(original.document_id, original.status)
        return await self._grant_reference(original, owner_id=owner_id, access_scope=ACCESS_PERSONAL)
