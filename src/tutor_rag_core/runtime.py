from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from tutor_rag_core.backend import RedisBackend
from tutor_rag_core.cache import SemanticResponseCache
from tutor_rag_core.config import Settings
from tutor_rag_core.db import PostgresConfig, open_pool
from tutor_rag_core.embedding import EmbeddingClient
from tutor_rag_core.extraction import PlainTextExtractor
from tutor_rag_core.ingestion import IngestionService
from tutor_rag_core.interfaces import TextExtractor
from tutor_rag_core.llm import LlmServiceClient
from tutor_rag_core.nats_publisher import NatsStageEventSink
from tutor_rag_core.pipeline import PipelineConfig, ProcessingPipeline
from tutor_rag_core.qdrant import QdrantClient
from tutor_rag_core.query import QueryConfig, QueryEngine
from tutor_rag_core.rate_limit import RateLimiter
from tutor_rag_core.repositories import (
    ChunkRepository,
    ConversationRepository,
    DocumentRepository,
    StageEventRepository,
)
from tutor_rag_core.service import QueryService, StatusService
from tutor_rag_core.storage.s3 import S3Config, S3ObjectStore
from tutor_rag_core.workers import PipelineWorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Runtime:
    ingestion: IngestionService
    queries: QueryService
    status: StatusService
    pipeline: ProcessingPipeline
    workers: PipelineWorkerPool


@asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    extractor: TextExtractor | None = None,
) -> AsyncIterator[Runtime]:
    """
    Wire every component from `settings` and run the worker pool for the lifetime of the
    context. Requests and pipeline workers share one Postgres pool; every repository call
    borrows its own connection.
    """
    dsn = PostgresConfig(dsn=settings.pg_dsn).build_dsn()
    backend = RedisBackend.from_url(settings.redis_url)
    store = S3ObjectStore(
        S3Config(
            endpoint=settings.s3_endpoint,
            bucket=settings.s3_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
        )
    )
    embedder = EmbeddingClient(
        base_url=settings.embedding_url,
        api_key=settings.embedding_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dim,
        timeout_s=settings.embed_timeout_s,
    )
    index = QdrantClient(
        base_url=settings.qdrant_url,
        collection=settings.qdrant_collection,
        api_key=settings.qdrant_api_key,
    )
    llm = LlmServiceClient(
        base_url=settings.llm_url,
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        timeout_s=settings.llm_timeout_s,
    )
    extractor = extractor or PlainTextExtractor()
    await index.ensure_collection(vector_size=settings.embedding_dim)

    async with open_pool(dsn, max_size=settings.pg_pool_max_size) as pool:
        catalog = DocumentRepository(pool)
        chunks = ChunkRepository(pool)
        events = StageEventRepository(pool)
        pipeline = ProcessingPipeline(
            catalog=catalog,
            chunks=chunks,
            events=events,
            extractor=extractor,
            embedder=embedder,
            index=index,
            object_store=store,
            sink=NatsStageEventSink(settings.nats_url) if settings.nats_url else None,
            config=PipelineConfig.from_settings(settings),
        )
        workers = PipelineWorkerPool(
            pipeline,
            workers=settings.pipeline_workers,
            queue_size=settings.pipeline_queue_size,
        )
        cache = SemanticResponseCache(backend, ttls=settings.cache_ttls)
        limiter = RateLimiter(backend, table=settings.rate_limits)
        ingestion = IngestionService(
            catalog=catalog,
            object_store=store,
            workers=workers,
            upload_limits=settings.upload_limits,
            max_upload_bytes=settings.max_upload_bytes,
            embedding_cost_per_page=settings.embedding_cost_per_page,
            supported_extensions=extractor.supported_extensions,
            supported_mime_types=extractor.supported_mime_types,
        )
        engine = QueryEngine(
            catalog=catalog,
            chunks=chunks,
            embedder=embedder,
            index=index,
            llm=llm,
            conversations=ConversationRepository(pool),
            config=QueryConfig.from_settings(settings),
        )
        runtime = Runtime(
            ingestion=ingestion,
            queries=QueryService(engine=engine, cache=cache, limiter=limiter),
            status=StatusService(
                catalog=catalog,
                events=events,
                ingestion=ingestion,
                cache=cache,
                limiter=limiter,
                object_store=store,
            ),
            pipeline=pipeline,
            workers=workers,
        )
        workers.start()
        logger.info("runtime started")
        try:
            yield runtime
        finally:
            await workers.stop()
            await backend.close()
            logger.info("runtime stopped")
