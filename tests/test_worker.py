"""Tests for the background ingestion worker pool."""
import asyncio

import pytest

from article_rag.documents import VectorStatus
from article_rag.errors import IngestionQueueFull
from article_rag.rag.worker import IngestionWorker


@pytest.fixture
async def worker(pipeline):
    pool = IngestionWorker(pipeline, concurrency=2, queue_size=3)
    yield pool
    await pool.stop()


class TestIngestionWorker:
    async def test_run_enqueues_and_dedupes(self, worker, db):
        document_id = db.insert_document("Title", "content", owner_id=1)

        assert worker.run(document_id) is True
        assert worker.run(document_id) is False
        assert worker.queue.qsize() == 1

    async def test_processes_queued_documents(self, worker, db):
        ids = [
            db.insert_document(f"Doc {n}", f"content of document {n}", owner_id=1)
            for n in range(3)
        ]
        for document_id in ids:
            worker.run(document_id)

        worker.start()
        assert worker.running
        await asyncio.wait_for(worker.join(), timeout=10)

        for document_id in ids:
            document = db.get_document(document_id)
            assert document.vector_status is VectorStatus.COMPLETED
            assert document.vector_progress == 100

    async def test_queue_full(self, worker, db):
        ids = [db.insert_document(f"Doc {n}", "text", owner_id=1) for n in range(4)]
        for document_id in ids[:3]:
            worker.run(document_id)

        with pytest.raises(IngestionQueueFull):
            worker.run(ids[3])

    async def test_document_can_be_requeued_once_picked_up(self, worker, db, provider):
        document_id = db.insert_document("Title", "content", owner_id=1)
        provider.gate = asyncio.Event()

        worker.run(document_id)
        worker.start()
        while not provider.embedding_calls:
            await asyncio.sleep(0)

        assert worker.run(document_id) is True

        provider.gate.set()
        await asyncio.wait_for(worker.join(), timeout=10)

        assert len(provider.embedding_calls) == 2
        assert db.get_document(document_id).vector_status is VectorStatus.COMPLETED

    async def test_completed_document_runs_again(self, worker, db, pipeline):
        document_id = db.insert_document("Title", "content", owner_id=1)
        await pipeline.run(document_id)
        assert db.get_document(document_id).vector_status is VectorStatus.COMPLETED

        worker.run(document_id)
        worker.start()
        await asyncio.wait_for(worker.join(), timeout=10)

        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.COMPLETED
        assert document.vector_progress == 100
        assert len(db.get_vector_row_ids(document_id=document_id)) == 1

    async def test_missing_document_does_not_stop_worker(self, worker, db):
        document_id = db.insert_document("Title", "content", owner_id=1)
        worker.run(999)
        worker.run(document_id)

        worker.start()
        await asyncio.wait_for(worker.join(), timeout=10)

        assert db.get_document(document_id).vector_status is VectorStatus.COMPLETED
        assert worker.running

    async def test_stop_cancels_in_flight_run(self, worker, db, provider):
        document_id = db.insert_document("Title", "content", owner_id=1)
        provider.gate = asyncio.Event()

        worker.run(document_id)
        worker.start()
        while not provider.embedding_calls:
            await asyncio.sleep(0)

        await worker.stop()

        assert not worker.running
        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.FAILED
        assert document.vector_progress == 0
