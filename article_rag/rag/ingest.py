"""Ingest pipeline for indexing one document.

Orchestrates:
- Document fetch
- Text chunking
- Batched embedding generation
- Vector insert, stale vector cleanup and fragment replacement
- Status/progress reporting through ProgressTracker

Runs for the same document are serialized; runs for different documents may
overlap freely.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional

import structlog

from article_rag.db import Database
from article_rag.documents import Document, VectorStatus
from article_rag.errors import DocumentNotFoundError
from article_rag.rag.chunker import TextChunk, TextChunker
from article_rag.rag.embeddings import EmbeddingGateway
from article_rag.rag.progress import (
    ProgressObserver,
    ProgressTracker,
    Stage,
    StatusStoreObserver,
    embedding_progress,
)
from article_rag.rag.store_faiss import FAISSVectorStore, IndexedRow

logger = structlog.get_logger()


@dataclass
class IngestResult:
    document_id: int
    status: VectorStatus
    fragment_count: int = 0
    vector_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None


class DocumentLocks:
    """One asyncio.Lock per document id, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, document_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._users[document_id] = self._users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[document_id] -= 1
            if self._users[document_id] == 0:
                del self._users[document_id]
                del self._locks[document_id]

    def is_locked(self, document_id: int) -> bool:
        lock = self._locks.get(document_id)
        return lock is not None and lock.locked()


class IngestPipeline:
    """Pipeline turning one stored document into indexed fragments."""

    def __init__(
        self,
        db: Database,
        gateway: EmbeddingGateway,
        vector_store: FAISSVectorStore,
        chunker: Optional[TextChunker] = None,
        observers: Iterable[ProgressObserver] = (),
    ):
        """Initialize the ingest pipeline.

        Args:
            db: Content store, status store and fragment store
            gateway: Embedding gateway used for the fragments
            vector_store: Vector index receiving the embeddings
            chunker: Text chunker (default sizes from config)
            observers: Extra progress observers, notified after the status store
        """
        self.db = db
        self.gateway = gateway
        self.vector_store = vector_store
        self.chunker = chunker or TextChunker()
        self.observers = list(observers)
        self.locks = DocumentLocks()

        logger.info(
            "ingest_pipeline_initialized",
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            batch_size=self.gateway.batch_size,
        )

    async def run(self, document_id: int) -> IngestResult:
        """Ingest a document, waiting for any earlier run on it to finish.

        Raises:
            DocumentNotFoundError: If the document does not exist (no status change)
        """
        async with self.locks.hold(document_id):
            return await self._run_locked(document_id)

    def _tracker_for(self, document: Document) -> ProgressTracker:
        initial = document.vector_status
        if initial is VectorStatus.PROCESSING:
            # No run holds the lock, so this is left over from a dead process
            logger.warning("stale_processing_status", document_id=document.id)
            initial = VectorStatus.FAILED
        return ProgressTracker(
            document.id,
            observers=[StatusStoreObserver(self.db), *self.observers],
            initial_status=initial,
        )

    async def _run_locked(self, document_id: int) -> IngestResult:
        document = self.db.get_document(document_id)
        if document is None:
            logger.warning("ingest_document_not_found", document_id=document_id)
            raise DocumentNotFoundError(document_id)

        logger.info(
            "ingesting_document",
            document_id=document_id,
            owner_id=document.owner_id,
            content_length=len(document.content),
        )

        tracker = self._tracker_for(document)
        await tracker.advance(Stage.STARTED)

        try:
            chunks = list(self.chunker.iter_chunks(document.content))
            logger.info(
                "document_chunked",
                document_id=document_id,
                **self.chunker.get_chunk_stats(chunks),
            )
            await tracker.advance(Stage.CHUNKED)

            async def on_batch(done: int, total: int) -> None:
                await tracker.advance(Stage.EMBEDDING, embedding_progress(done, total))

            embeddings = await self.gateway.embed(
                [document.embedding_text(chunk.content) for chunk in chunks],
                on_batch=on_batch,
            )

            vector_ids = await self.vector_store.insert_chunks(
                self._indexed_rows(document, chunks, embeddings)
            )

        except asyncio.CancelledError:
            logger.warning("ingestion_cancelled", document_id=document_id)
            await tracker.fail()
            raise
        except Exception as e:
            logger.error(
                "ingestion_failed",
                document_id=document_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await tracker.fail()
            return IngestResult(
                document_id=document_id,
                status=VectorStatus.FAILED,
                error=str(e),
            )

        await self._remove_previous_generation(document_id, vector_ids)
        self._replace_fragments(document_id, chunks, vector_ids)

        await tracker.advance(Stage.COMPLETED)

        logger.info(
            "document_ingested",
            document_id=document_id,
            fragments=len(chunks),
        )

        return IngestResult(
            document_id=document_id,
            status=VectorStatus.COMPLETED,
            fragment_count=len(chunks),
            vector_ids=vector_ids,
        )

    @staticmethod
    def _indexed_rows(
        document: Document,
        chunks: List[TextChunk],
        embeddings: List[List[float]],
    ) -> List[IndexedRow]:
        return [
            IndexedRow(
                owner_id=document.owner_id,
                document_id=document.id,
                fragment_index=chunk.chunk_index,
                embedding=embedding,
                content=chunk.content,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

    async def _remove_previous_generation(
        self, document_id: int, vector_ids: List[int]
    ) -> None:
        """Drop every indexed vector of the document that this run did not write."""
        try:
            await self.vector_store.delete_document(document_id, keep_ids=vector_ids)
        except Exception as e:
            # New vectors are already searchable; stale ones linger until next run
            logger.error(
                "stale_vector_cleanup_failed",
                document_id=document_id,
                error=str(e),
            )

    def _replace_fragments(
        self, document_id: int, chunks: List[TextChunk], vector_ids: List[int]
    ) -> None:
        try:
            self.db.replace_fragments(
                document_id,
                [
                    {
                        "fragment_index": chunk.chunk_index,
                        "content": chunk.content,
                        "vector_id": vector_id,
                    }
                    for chunk, vector_id in zip(chunks, vector_ids)
                ],
            )
        except Exception as e:
            # TODO: compensate by deleting vector_ids from the index once the
            # status field can express "indexed but not catalogued"
            logger.error(
                "fragment_write_failed",
                document_id=document_id,
                vector_count=len(vector_ids),
                error=str(e),
            )
