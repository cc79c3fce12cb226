from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tutor_rag_core.cache import CachedAnswer, CacheStats, SemanticResponseCache, qa_cache_key
from tutor_rag_core.errors import DocumentNotFound, RateLimitExceeded, ValidationError
from tutor_rag_core.ingestion import IngestionService, QuotaView
from tutor_rag_core.interfaces import DocumentCatalog, ObjectStore, StageEventLog
from tutor_rag_core.models import STATUS_READY, Document, Source, StageEvent
from tutor_rag_core.query import QueryEngine
from tutor_rag_core.rate_limit import RateLimitDecision, RateLimiter, RateLimitStatus, headers
from tutor_rag_core.validation import validate_question

logger = logging.getLogger(__name__)

ENDPOINT_AI_QUERY = "ai_query"


@dataclass(frozen=True)
class QueryRequest:
    document_id: str
    question: str
    language: str = "en"
    conversation_id: str | None = None
    page_anchor: int | None = None
    selected_text: str | None = None

    @property
    def anchored(self) -> bool:
        return self.page_anchor is not None and bool(self.selected_text)


@dataclass(frozen=True)
class QueryResponse:
    answer: str
    sources: list[Source]
    tokens_used: int
    cached: bool
    conversation_id: str | None
    rate_limit: RateLimitDecision
    model: str | None = None

    @property
    def headers(self) -> dict[str, str]:
        return headers(self.rate_limit)


@dataclass(frozen=True)
class DocumentStatusView:
    document_id: str
    status: str
    page_count: int | None
    duplicate_of: str | None = None
    stages: dict[str, StageEvent] = field(default_factory=dict)
    message: str | None = None
    progress_percent: int | None = None


class QueryService:
    """
    Rate limit -> cache -> engine. Every error raised after the request was admitted carries
    the admission decision in `rate_limit`.
    """

    def __init__(
        self,
        *,
        engine: QueryEngine,
        cache: SemanticResponseCache,
        limiter: RateLimiter,
        endpoint: str = ENDPOINT_AI_QUERY,
    ):
        self._engine = engine
        self._cache = cache
        self._limiter = limiter
        self._endpoint = endpoint

    async def query(self, req: QueryRequest, *, actor_id: str, role: str | None) -> QueryResponse:
        decision = await self._limiter.consume(actor_id, self._endpoint, role)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        try:
            return await self._answer(req, actor_id=actor_id, decision=decision)
        except Exception as e:
            e.rate_limit = decision
            raise

    async def _answer(
        self, req: QueryRequest, *, actor_id: str, decision: RateLimitDecision
    ) -> QueryResponse:
        issues = validate_question(req.question)
        if issues:
            raise ValidationError(issues)

        doc = await self._engine.resolve(req.document_id)
        # Anchored questions depend on the selection, which the key does not capture.
        key = None
        if not req.anchored:
            key = qa_cache_key(
                document_id=doc.document_id,
                content_version=doc.content_version,
                language=req.language,
                question=req.question,
            )
            hit = await self._cache.get(key, endpoint=self._endpoint)
            if hit is not None:
                logger.info("answer served from cache document_id=%s", doc.document_id)
                return QueryResponse(
                    answer=hit.answer,
                    sources=hit.sources,
                    tokens_used=hit.tokens_used,
                    cached=True,
                    conversation_id=req.conversation_id,
                    rate_limit=decision,
                    model=hit.model,
                )

        result = await self._engine.answer(
            document_id=req.document_id,
            question=req.question,
            language=req.language,
            conversation_id=req.conversation_id,
            page_anchor=req.page_anchor,
            selected_text=req.selected_text,
            actor_id=actor_id,
        )
        if key is not None and result.tokens_used > 0:
            await self._cache.put(
                key,
                CachedAnswer(
                    answer=result.answer,
                    sources=result.sources,
                    tokens_used=result.tokens_used,
                    model=result.model,
                ),
            )
        return QueryResponse(
            answer=result.answer,
            sources=result.sources,
            tokens_used=result.tokens_used,
            cached=False,
            conversation_id=result.conversation_id,
            rate_limit=decision,
            model=result.model,
        )


class StatusService:
    def __init__(
        self,
        *,
        catalog: DocumentCatalog,
        events: StageEventLog,
        ingestion: IngestionService,
        cache: SemanticResponseCache,
        limiter: RateLimiter,
        object_store: ObjectStore | None = None,
    ):
        self._catalog = catalog
        self._events = events
        self._ingestion = ingestion
        self._cache = cache
        self._limiter = limiter
        self._store = object_store

    async def document_status(self, document_id: str) -> DocumentStatusView:
        """
        References report their original's processing state.
        """
        doc = await self._catalog.get_document(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        if not doc.is_reference:
            return await self._processing_view(doc)

        original = await self._catalog.get_document(doc.canonical_id)
        if original is None:
            raise DocumentNotFound(doc.canonical_id)
        view = await self._processing_view(original)
        ready = original.status == STATUS_READY
        return DocumentStatusView(
            document_id=doc.document_id,
            status=original.status,
            page_count=original.page_count,
            duplicate_of=doc.duplicate_of,
            stages=view.stages,
            message="Shared copy of an already processed document" if ready else view.message,
            progress_percent=100 if ready else view.progress_percent,
        )

    async def _processing_view(self, doc: Document) -> DocumentStatusView:
        events = await self._events.list_events(doc.document_id)
        stages: dict[str, StageEvent] = {}
        for ev in events:
            stages[ev.stage] = ev
        last = events[-1] if events else None
        return DocumentStatusView(
            document_id=doc.document_id,
            status=doc.status,
            page_count=doc.page_count,
            stages=stages,
            message=last.message if last else None,
            progress_percent=last.progress_percent if last else None,
        )

    async def document_url(self, document_id: str, *, expires_s: int = 3600) -> str:
        if self._store is None:
            raise RuntimeError("No object store configured")
        doc = await self._catalog.get_document(document_id)
        if doc is None or not doc.storage_ref:
            raise DocumentNotFound(document_id)
        return await self._store.access_url(doc.storage_ref, expires_s=expires_s)

    async def quota(self, owner_id: str, role: str | None) -> QuotaView:
        return await self._ingestion.quota(owner_id, role)

    async def cache_stats(self, timeframe: str = "day") -> CacheStats:
        return await self._cache.stats(timeframe)

    async def rate_limit_status(
        self, actor_id: str, endpoint: str = ENDPOINT_AI_QUERY, role: str | None = None
    ) -> RateLimitStatus:
        return await self._limiter.status(actor_id, endpoint, role)
