from tutor_rag_core.cache import SemanticResponseCache, qa_cache_key
from tutor_rag_core.chunking import build_chunks, detect_boilerplate
from tutor_rag_core.config import Settings, load_settings
from tutor_rag_core.embedding import EmbeddingClient
from tutor_rag_core.ingestion import IngestionService, UploadRequest, UploadResult
from tutor_rag_core.pipeline import PipelineJob, PipelineResult, ProcessingPipeline
from tutor_rag_core.qdrant import QdrantClient, deterministic_point_id
from tutor_rag_core.query import QueryEngine, rerank
from tutor_rag_core.rate_limit import RateLimitDecision, RateLimiter
from tutor_rag_core.service import QueryRequest, QueryResponse, QueryService, StatusService
from tutor_rag_core.util import content_hash
from tutor_rag_core.validation import ValidationIssue, validate_upload

__all__ = [
    "__version__",
    "EmbeddingClient",
    "IngestionService",
    "PipelineJob",
    "PipelineResult",
    "ProcessingPipeline",
    "QdrantClient",
    "QueryEngine",
    "QueryRequest",
    "QueryResponse",
    "QueryService",
    "RateLimitDecision",
    "RateLimiter",
    "SemanticResponseCache",
    "Settings",
    "StatusService",
    "UploadRequest",
    "UploadResult",
    "ValidationIssue",
    "build_chunks",
    "content_hash",
    "detect_boilerplate",
    "deterministic_point_id",
    "load_settings",
    "qa_cache_key",
    "rerank",
    "validate_upload",
]

__version__ = "0.1.0"
