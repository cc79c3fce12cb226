"""
Narrow seams between the core and its collaborators.

The Postgres repositories, the httpx/boto3/redis adapters and the test fakes all satisfy
these structurally; nothing here is instantiated directly.
"""

from __future__ import annotations

from typing import Any, Protocol

from tutor_rag_core.extraction import ExtractionResult
from tutor_rag_core.llm import Completion
from tutor_rag_core.models import Chunk, ConversationTurn, Document, StageEvent
from tutor_rag_core.qdrant import VectorMatch


class DocumentCatalog(Protocol):
    async def create_document(self, doc: Document) -> Document: ...
    async def get_document(self, document_id: str) -> Document | None: ...
    async def find_original_by_hash(self, content_hash: str) -> Document | None: ...
    async def find_reference(self, *, owner_id: str, original_id: str) -> Document | None: ...
    async def count_owned(self, owner_id: str) -> int: ...
    async def advance_status(
        self, document_id: str, status: str, *, page_count: int | None = None
    ) -> Document: ...
    async def reset_for_reprocessing(self, document_id: str) -> Document: ...


class ChunkStore(Protocol):
    async def replace_chunks(self, *, document_id: str, chunks: list[Chunk]) -> None: ...
    async def get_chunks(self, document_id: str, sequence_numbers: list[int]) -> list[Chunk]: ...
    async def list_unindexed(self, document_id: str) -> list[Chunk]: ...
    async def set_vector_id(
        self, *, document_id: str, sequence_number: int, vector_id: str
    ) -> None: ...
    async def clear_vector_ids(self, document_id: str) -> None: ...


class StageEventLog(Protocol):
    async def append(self, event: StageEvent) -> None: ...
    async def list_events(self, document_id: str) -> list[StageEvent]: ...
    async def latest_per_stage(self, document_id: str) -> dict[str, StageEvent]: ...


class ConversationStore(Protocol):
    async def get_turns(self, conversation_id: str, *, limit: int = 20) -> list[ConversationTurn]: ...
    async def append_turns(
        self,
        *,
        conversation_id: str,
        owner_id: str,
        document_id: str,
        turns: list[ConversationTurn],
    ) -> None: ...


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, *, content_type: str | None = None) -> str: ...
    async def get(self, ref: str) -> bytes: ...
    async def access_url(self, ref: str, *, expires_s: int = 3600) -> str: ...
    async def delete(self, ref: str) -> None: ...


class TextExtractor(Protocol):
    supported_extensions: frozenset[str]
    supported_mime_types: frozenset[str]

    async def extract(self, data: bytes, filename: str) -> ExtractionResult: ...


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class VectorIndex(Protocol):
    async def upsert_points(self, *, points: list[dict[str, Any]]) -> None: ...
    async def search(
        self,
        *,
        vector: list[float],
        limit: int = 10,
        document_id: str | None = None,
    ) -> list[VectorMatch]: ...
    async def delete_points_for_document(self, *, document_id: str) -> None: ...


class LlmClient(Protocol):
    async def chat_completion(
        self,
        *,
        messages: list[dict[str, Any]],
        max_tokens: int = 1500,
        temperature: float = 0.7,
    ) -> Completion: ...


class StageEventSink(Protocol):
    async def publish(self, event: StageEvent) -> None: ...


class CounterBackend(Protocol):
    """
    Cache / rate-limit store. Implementations raise `BackendUnavailable` when unreachable.
    """

    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str, *, ttl_s: int | None = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def incr(self, key: str, amount: int = 1, *, ttl_s: int | None = None) -> int: ...
    async def incr_float(self, key: str, amount: float, *, ttl_s: int | None = None) -> float: ...
    async def incr_if_below(self, key: str, *, limit: int, ttl_s: int) -> tuple[bool, int]: ...
