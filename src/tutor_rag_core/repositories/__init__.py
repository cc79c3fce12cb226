from tutor_rag_core.repositories.chunks import ChunkRepository
from tutor_rag_core.repositories.conversations import ConversationRepository
from tutor_rag_core.repositories.documents import DocumentRepository
from tutor_rag_core.repositories.stage_events import StageEventRepository

__all__ = [
    "ChunkRepository",
    "ConversationRepository",
    "DocumentRepository",
    "StageEventRepository",
]
