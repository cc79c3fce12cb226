from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from tutor_rag_core.config import Settings
from tutor_rag_core.errors import DocumentNotFound, NotReadyError
from tutor_rag_core.interfaces import (
    ChunkStore,
    ConversationStore,
    DocumentCatalog,
    Embedder,
    LlmClient,
    VectorIndex,
)
from tutor_rag_core.models import (
    STATUS_READY,
    Chunk,
    ConversationTurn,
    Document,
    QueryResult,
    Source,
)
from tutor_rag_core.qdrant import VectorMatch
from tutor_rag_core.util import sanitize_text, truncate_text

logger = logging.getLogger(__name__)

# Candidates without a page number sort as if they were far from any anchor.
MISSING_PAGE = 999

SNIPPET_CHARS = 200
CONTEXT_SEPARATOR = "\n\n---\n\n"

NO_INFO_ANSWER = (
    "I couldn't find relevant information in this document to answer your question. "
    "Could you try rephrasing or asking about a different topic?"
)

SYSTEM_PROMPT = (
    "You are an AI tutor helping students learn from their textbooks. "
    "You have access to relevant pages from the book.\n\n"
    "Guidelines:\n"
    "- Answer questions accurately based on the provided context\n"
    "- If the answer isn't in the context, say so politely\n"
    "- Reference specific page numbers when citing information\n"
    "- Be clear, concise, and educational\n"
    "- Encourage further learning"
)

ANCHOR_SYSTEM_PROMPT = (
    "You are a helpful AI tutor. The student has selected text from page {page} of their "
    "textbook and is asking for an explanation. Provide a clear, educational explanation based "
    "on the context from the book. Reference page numbers when relevant."
)

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "zh": "Chinese",
    "hi": "Hindi",
    "ar": "Arabic",
    "pt": "Portuguese",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "it": "Italian",
    "nl": "Dutch",
    "pl": "Polish",
    "tr": "Turkish",
    "vi": "Vietnamese",
    "th": "Thai",
}


@dataclass(frozen=True)
class QueryConfig:
    top_k: int = 10
    top_n: int = 5
    proximity_penalty: float = 0.01
    max_context_chars: int = 12_000
    context_chars_per_chunk: int = 3_000
    history_turns: int = 6
    embed_timeout_s: float = 20.0
    search_timeout_s: float = 30.0
    llm_timeout_s: float = 60.0
    max_tokens: int = 1500
    temperature: float = 0.7

    @classmethod
    def from_settings(cls, settings: Settings) -> QueryConfig:
        return cls(
            top_k=settings.retrieval_top_k,
            top_n=settings.rerank_top_n,
            proximity_penalty=settings.proximity_penalty,
            max_context_chars=settings.max_context_chars,
            context_chars_per_chunk=settings.context_chars_per_chunk,
            embed_timeout_s=settings.embed_timeout_s,
            llm_timeout_s=settings.llm_timeout_s,
        )


@dataclass(frozen=True)
class RankedMatch:
    match: VectorMatch
    final_score: float

    @property
    def page(self) -> int:
        return self.match.page_number if self.match.page_number is not None else MISSING_PAGE


def rerank(
    matches: list[VectorMatch],
    *,
    anchor_page: int | None = None,
    penalty: float = 0.01,
    top_n: int = 5,
) -> list[RankedMatch]:
    """
    Proximity-aware rerank: `score - penalty * |page - anchor_page|` when an anchor is
    given, else the raw score. Ties keep retrieval order.
    """
    ranked: list[RankedMatch] = []
    for m in matches:
        score = m.score
        if anchor_page is not None:
            page = m.page_number if m.page_number is not None else MISSING_PAGE
            score -= penalty * abs(page - anchor_page)
        ranked.append(RankedMatch(match=m, final_score=score))
    ranked.sort(key=lambda r: r.final_score, reverse=True)
    return ranked[:top_n]


def build_context(
    ranked: list[RankedMatch],
    chunks_by_page: dict[int, Chunk],
    *,
    per_chunk_chars: int = 3_000,
    max_chars: int = 12_000,
) -> str:
    blocks: list[str] = []
    used = 0
    for r in ranked:
        chunk = chunks_by_page.get(r.page)
        text = (chunk.cleaned_text or chunk.raw_text) if chunk else r.match.text_preview
        block = f"[Page {r.page}]\n{truncate_text(text, per_chunk_chars)}"
        cost = len(block) + (len(CONTEXT_SEPARATOR) if blocks else 0)
        if used + cost > max_chars:
            if not blocks:
                blocks.append(truncate_text(block, max_chars))
            break
        blocks.append(block)
        used += cost
    return CONTEXT_SEPARATOR.join(blocks)


def language_instruction(language: str) -> str:
    code = (language or "en").strip().lower()
    if code == "en":
        return ""
    name = LANGUAGE_NAMES.get(code, code)
    return f"\n\nIMPORTANT: Write your entire answer in {name}."


def build_messages(
    *,
    question: str,
    context: str,
    history: list[ConversationTurn],
    language: str = "en",
    page_anchor: int | None = None,
    selected_text: str | None = None,
) -> list[dict[str, Any]]:
    anchored = page_anchor is not None and bool(selected_text)
    system = ANCHOR_SYSTEM_PROMPT.format(page=page_anchor) if anchored else SYSTEM_PROMPT
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": system + language_instruction(language)}
    ]
    messages.extend({"role": t.role, "content": t.content} for t in history)
    if anchored:
        user = (
            f"Context from textbook:\n\n{context}\n\n"
            f'Selected text from page {page_anchor}: "{selected_text}"\n\n'
            f"Question: {question}\n\nProvide a clear explanation based on the context."
        )
    else:
        user = (
            f"Context from textbook:\n\n{context}\n\n"
            f"Question: {question}\n\nProvide a clear explanation based on the context."
        )
    messages.append({"role": "user", "content": user})
    return messages


def retrieval_text(question: str, *, page_anchor: int | None, selected_text: str | None) -> str:
    if page_anchor is not None and selected_text:
        return f'Context from page {page_anchor}: "{selected_text}"\n\nQuestion: {question}'
    return question


def new_conversation_id() -> str:
    return f"conv_{uuid4().hex}"


class QueryEngine:
    """
    Retrieval-augmented answering over one document's pages.
    """

    def __init__(
        self,
        *,
        catalog: DocumentCatalog,
        chunks: ChunkStore,
        embedder: Embedder,
        index: VectorIndex,
        llm: LlmClient,
        conversations: ConversationStore | None = None,
        config: QueryConfig | None = None,
    ):
        self._catalog = catalog
        self._chunks = chunks
        self._embedder = embedder
        self._index = index
        self._llm = llm
        self._conversations = conversations
        self._cfg = config or QueryConfig()

    async def resolve(self, document_id: str) -> Document:
        """
        Return the canonical (original) document behind `document_id`, which must be ready.
        """
        doc = await self._catalog.get_document(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        if doc.is_reference:
            doc = await self._catalog.get_document(doc.canonical_id)
            if doc is None:
                raise DocumentNotFound(document_id)
        if doc.status != STATUS_READY:
            raise NotReadyError(document_id, doc.status)
        return doc

    async def _history(self, conversation_id: str | None) -> list[ConversationTurn]:
        if not conversation_id or self._conversations is None:
            return []
        try:
            turns = await self._conversations.get_turns(conversation_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "conversation lookup failed conversation_id=%s", conversation_id, exc_info=True
            )
            return []
        return turns[-self._cfg.history_turns :] if self._cfg.history_turns else []

    async def _remember(
        self,
        *,
        conversation_id: str,
        actor_id: str,
        document_id: str,
        turns: list[ConversationTurn],
    ) -> None:
        if self._conversations is None:
            return
        try:
            await self._conversations.append_turns(
                conversation_id=conversation_id,
                owner_id=actor_id,
                document_id=document_id,
                turns=turns,
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "conversation append failed conversation_id=%s", conversation_id, exc_info=True
            )

    async def answer(
        self,
        *,
        document_id: str,
        question: str,
        language: str = "en",
        conversation_id: str | None = None,
        page_anchor: int | None = None,
        selected_text: str | None = None,
        actor_id: str = "",
    ) -> QueryResult:
        doc = await self.resolve(document_id)
        canonical_id = doc.document_id

        vector = await asyncio.wait_for(
            self._embedder.embed(
                retrieval_text(question, page_anchor=page_anchor, selected_text=selected_text)
            ),
            timeout=self._cfg.embed_timeout_s,
        )
        matches = await asyncio.wait_for(
            self._index.search(vector=vector, limit=self._cfg.top_k, document_id=canonical_id),
            timeout=self._cfg.search_timeout_s,
        )
        if not matches:
            logger.info("no retrieval candidates document_id=%s", canonical_id)
            return QueryResult(
                answer=NO_INFO_ANSWER,
                sources=[],
                tokens_used=0,
                model=None,
                conversation_id=conversation_id,
            )

        ranked = rerank(
            matches,
            anchor_page=page_anchor,
            penalty=self._cfg.proximity_penalty,
            top_n=self._cfg.top_n,
        )
        pages = [r.page for r in ranked if r.match.page_number is not None]
        chunks_by_page = {
            c.page_number: c for c in await self._chunks.get_chunks(canonical_id, pages)
        }
        context = build_context(
            ranked,
            chunks_by_page,
            per_chunk_chars=self._cfg.context_chars_per_chunk,
            max_chars=self._cfg.max_context_chars,
        )
        history = await self._history(conversation_id)
        completion = await asyncio.wait_for(
            self._llm.chat_completion(
                messages=build_messages(
                    question=question,
                    context=context,
                    history=history,
                    language=language,
                    page_anchor=page_anchor,
                    selected_text=selected_text,
                ),
                max_tokens=self._cfg.max_tokens,
                temperature=self._cfg.temperature,
            ),
            timeout=self._cfg.llm_timeout_s,
        )

        sources = [
            Source(
                page=r.match.page_number,
                snippet=truncate_text(
                    sanitize_text(r.match.text_preview or _chunk_text(chunks_by_page, r.page)),
                    SNIPPET_CHARS,
                ),
                score=r.match.score,
            )
            for r in ranked
        ]
        conv_id = conversation_id or new_conversation_id()
        await self._remember(
            conversation_id=conv_id,
            actor_id=actor_id,
            document_id=document_id,
            turns=[
                ConversationTurn(
                    role="user",
                    content=question,
                    metadata={"page_anchor": page_anchor, "language": language},
                ),
                ConversationTurn(
                    role="assistant",
                    content=completion.text,
                    metadata={
                        "pages": [s.page for s in sources],
                        "tokens_used": completion.total_tokens,
                    },
                ),
            ],
        )
        return QueryResult(
            answer=completion.text,
            sources=sources,
            tokens_used=completion.total_tokens,
            model=completion.model,
            conversation_id=conv_id,
        )


def _chunk_text(chunks_by_page: dict[int, Chunk], page: int) -> str:
    chunk = chunks_by_page.get(page)
    return chunk.cleaned_text if chunk else ""
