from __future__ import annotations

import asyncio
import logging

from tutor_rag_core.errors import EnqueueError
from tutor_rag_core.models import STAGE_EXTRACTION
from tutor_rag_core.pipeline import PipelineJob, ProcessingPipeline

logger = logging.getLogger(__name__)


class PipelineWorkerPool:
    """
    In-process job queue drained by `workers` tasks.

    `enqueue()` is idempotent per document while a job for it is queued or running. When a
    job cannot be queued the document is marked failed and `EnqueueError` is raised, so the
    upload is visible as failed instead of stuck in processing.
    """

    def __init__(self, pipeline: ProcessingPipeline, *, workers: int = 2, queue_size: int = 100):
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self._pipeline = pipeline
        self._workers = workers
        self._queue: asyncio.Queue[PipelineJob] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task[None]] = []
        self._in_flight: set[str] = set()

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    def in_flight(self, document_id: str) -> bool:
        return document_id in self._in_flight

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"pipeline-worker-{i}")
            for i in range(self._workers)
        ]
        logger.info("pipeline worker pool started workers=%s", self._workers)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("pipeline worker pool stopped")

    async def join(self) -> None:
        await self._queue.join()

    async def enqueue(self, job: PipelineJob) -> bool:
        """
        Returns False when a job for the document is already queued or running.
        """
        if job.document_id in self._in_flight:
            logger.info("pipeline job already in flight document_id=%s", job.document_id)
            return False
        if not self._tasks:
            await self._reject(job, "Processing workers are not running")
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            await self._reject(job, "Processing queue is full")
        self._in_flight.add(job.document_id)
        return True

    async def _reject(self, job: PipelineJob, reason: str) -> None:
        await self._pipeline.fail(job.document_id, STAGE_EXTRACTION, reason)
        raise EnqueueError(reason)

    async def _worker(self, n: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._pipeline.run(job)
            except Exception:  # noqa: BLE001
                logger.exception("pipeline worker %s failed document_id=%s", n, job.document_id)
            finally:
                self._in_flight.discard(job.document_id)
                self._queue.task_done()
