"""Background ingestion worker pool.

`run()` enqueues a document and returns at once; a fixed number of asyncio
tasks drain the queue. A document already waiting in the queue is not queued
a second time, and the pipeline serializes runs of the same document.
"""
import asyncio
from typing import List, Set

import structlog

from article_rag import config
from article_rag.errors import DocumentNotFoundError, IngestionQueueFull
from article_rag.rag.ingest import IngestPipeline

logger = structlog.get_logger()


class IngestionWorker:
    """Bounded pool of asyncio tasks running IngestPipeline.run."""

    def __init__(
        self,
        pipeline: IngestPipeline,
        concurrency: int = None,
        queue_size: int = None,
    ):
        self.pipeline = pipeline
        self.concurrency = concurrency or config.INGEST_WORKERS
        self.queue: asyncio.Queue = asyncio.Queue(
            maxsize=queue_size or config.INGEST_QUEUE_SIZE
        )
        self._queued: Set[int] = set()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Spawn the worker tasks on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._work(n), name=f"ingest-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info("ingestion_worker_started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Cancel the worker tasks, interrupting any run in progress."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("ingestion_worker_stopped", pending=self.queue.qsize())

    def run(self, document_id: int) -> bool:
        """Queue a document for ingestion.

        The status is not reset here: a completed or failed document goes
        straight back to processing when its run starts.

        Returns:
            False if the document was already waiting in the queue

        Raises:
            IngestionQueueFull: If the queue is at capacity
        """
        if document_id in self._queued:
            logger.info("ingestion_already_queued", document_id=document_id)
            return False

        try:
            self.queue.put_nowait(document_id)
        except asyncio.QueueFull as e:
            logger.warning("ingestion_queue_full", document_id=document_id)
            raise IngestionQueueFull(
                f"Ingestion queue is full ({self.queue.maxsize} documents)"
            ) from e

        self._queued.add(document_id)
        logger.info(
            "ingestion_queued", document_id=document_id, queued=self.queue.qsize()
        )
        return True

    async def join(self) -> None:
        """Wait until every queued document has been processed."""
        await self.queue.join()

    async def _work(self, worker_id: int) -> None:
        while True:
            document_id = await self.queue.get()
            self._queued.discard(document_id)
            try:
                result = await self.pipeline.run(document_id)
                logger.info(
                    "ingestion_finished",
                    worker=worker_id,
                    document_id=document_id,
                    status=result.status.value,
                )
            except DocumentNotFoundError:
                logger.warning(
                    "ingestion_skipped_missing_document",
                    worker=worker_id,
                    document_id=document_id,
                )
            except Exception as e:
                logger.error(
                    "ingestion_worker_error",
                    worker=worker_id,
                    document_id=document_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self.queue.task_done()
