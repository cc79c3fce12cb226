from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    limit: int
    window: int


# endpoint class -> role -> rule
RateLimitTable = dict[str, dict[str, RateLimitRule]]


def default_rate_limits() -> RateLimitTable:
    def rules(student: int, teacher: int, institution: int, admin: int, window: int) -> dict:
        return {
            "student": RateLimitRule(limit=student, window=window),
            "teacher": RateLimitRule(limit=teacher, window=window),
            "institution": RateLimitRule(limit=institution, window=window),
            "admin": RateLimitRule(limit=admin, window=window),
        }

    return {
        "ai_query": rules(100, 500, 2000, 10000, 900),
        "quiz_generation": rules(50, 200, 1000, 5000, 900),
        "study_plan": rules(20, 100, 500, 2000, 3600),
        "general": rules(1000, 2000, 10000, 50000, 900),
    }


def default_upload_limits() -> dict[str, int | None]:
    # None means unlimited.
    return {"student": 3, "teacher": 5, "institution": 20, "admin": None}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    pg_dsn: str | None = Field(default=None, alias="PG_DSN")
    pg_pool_max_size: int = Field(default=10, alias="PG_POOL_MAX_SIZE")

    qdrant_url: str = Field(alias="QDRANT_URL")
    qdrant_api_key: str | None = Field(default=None, alias="QDRANT_API_KEY")
    qdrant_collection: str = Field(default="document_pages_v1", alias="QDRANT_COLLECTION")

    embedding_url: str = Field(alias="EMBEDDING_URL")
    embedding_api_key: str | None = Field(default=None, alias="EMBEDDING_API_KEY")
    embedding_model: str = Field(default="text-embedding-3-large", alias="EMBEDDING_MODEL")
    embedding_dim: int = Field(default=3072, alias="EMBEDDING_DIM")

    llm_url: str = Field(alias="LLM_URL")
    llm_api_key: str | None = Field(default=None, alias="LLM_API_KEY")
    llm_model: str = Field(default="gpt-4o-mini", alias="LLM_MODEL")

    s3_endpoint: str = Field(alias="S3_ENDPOINT")
    s3_bucket: str = Field(alias="S3_BUCKET")
    s3_access_key: str = Field(default="", alias="S3_ACCESS_KEY")
    s3_secret_key: str = Field(default="", alias="S3_SECRET_KEY")

    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    nats_url: str | None = Field(default=None, alias="NATS_URL")

    embed_batch_size: int = Field(default=10, alias="EMBED_BATCH_SIZE")
    min_embed_chars: int = Field(default=50, alias="MIN_EMBED_CHARS")
    embed_timeout_s: float = Field(default=20.0, alias="EMBED_TIMEOUT_S")
    llm_timeout_s: float = Field(default=60.0, alias="LLM_TIMEOUT_S")
    pipeline_workers: int = Field(default=2, alias="PIPELINE_WORKERS")
    pipeline_queue_size: int = Field(default=100, alias="PIPELINE_QUEUE_SIZE")
    boilerplate_min_ratio: float = Field(default=0.6, alias="BOILERPLATE_MIN_RATIO")

    max_upload_bytes: int = Field(default=50 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")
    embedding_cost_per_page: float = Field(default=0.0001, alias="EMBEDDING_COST_PER_PAGE")

    retrieval_top_k: int = Field(default=10, alias="RETRIEVAL_TOP_K")
    rerank_top_n: int = Field(default=5, alias="RERANK_TOP_N")
    proximity_penalty: float = Field(default=0.01, alias="PROXIMITY_PENALTY")
    max_context_chars: int = Field(default=12_000, alias="MAX_CONTEXT_CHARS")
    context_chars_per_chunk: int = Field(default=3_000, alias="CONTEXT_CHARS_PER_CHUNK")

    cache_ttl_answer_s: int = Field(default=7 * 24 * 60 * 60, alias="CACHE_TTL_ANSWER_S")

    rate_limits: RateLimitTable = Field(default_factory=default_rate_limits, alias="RATE_LIMITS")
    upload_limits: dict[str, int | None] = Field(
        default_factory=default_upload_limits, alias="UPLOAD_LIMITS"
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def cache_ttls(self) -> dict[str, int]:
        return {"answer": self.cache_ttl_answer_s}


def load_settings() -> Settings:
    return Settings()
