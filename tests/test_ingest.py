"""Tests for the ingest pipeline."""
import asyncio

import pytest

from article_rag.documents import VectorStatus
from article_rag.errors import DocumentNotFoundError

# 17000 characters split 800/100 gives 25 fragments
LONG_CONTENT_LENGTH = 17000


def body(length, seed="lorem ipsum dolor sit amet "):
    return (seed * (length // len(seed) + 1))[:length]


@pytest.fixture
def document_id(db):
    return db.insert_document(
        "Vector search notes", body(1700), owner_id=1, tags="faiss,ivf"
    )


async def wait_for_embedding_call(provider):
    while not provider.embedding_calls:
        await asyncio.sleep(0)


class TestIngestPipeline:
    async def test_successful_run(self, pipeline, provider, db, document_id):
        result = await pipeline.run(document_id)

        assert result.status is VectorStatus.COMPLETED
        assert result.fragment_count == 3
        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.COMPLETED
        assert document.vector_progress == 100

        fragments = db.get_fragments(document_id)
        assert [f["fragment_index"] for f in fragments] == [0, 1, 2]
        assert [f["vector_id"] for f in fragments] == result.vector_ids
        assert fragments[1]["content"] == body(1700)[700:1500]

        sent = provider.embedding_calls[0]
        assert len(sent) == 3
        assert sent[0] == "Vector search notes faiss,ivf\n" + body(1700)[:800]

    async def test_progress_sequence(self, pipeline, db, event_log):
        document_id = db.insert_document(
            "Long", body(LONG_CONTENT_LENGTH), owner_id=1
        )

        result = await pipeline.run(document_id)

        assert result.fragment_count == 25
        assert event_log.progress == [10, 20, 48, 76, 90, 100]
        assert event_log.events[-1].status is VectorStatus.COMPLETED

    async def test_embedding_failure(self, pipeline, provider, db, event_log):
        document_id = db.insert_document(
            "Long", body(LONG_CONTENT_LENGTH), owner_id=1
        )
        provider.fail_embedding_call = 2

        result = await pipeline.run(document_id)

        assert result.status is VectorStatus.FAILED
        assert "HTTP 500" in result.error
        assert event_log.progress == [10, 20, 48, 0]
        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.FAILED
        assert document.vector_progress == 0
        assert db.get_fragments(document_id) == []
        assert db.count_vector_rows() == 0

    async def test_vector_insert_failure(self, pipeline, provider, db, document_id):
        provider.embed_fn = lambda text: [0.5, 0.5]

        result = await pipeline.run(document_id)

        assert result.status is VectorStatus.FAILED
        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.FAILED
        assert document.vector_progress == 0
        assert db.get_fragments(document_id) == []
        assert db.count_vector_rows() == 0

    async def test_missing_document(self, pipeline, provider):
        with pytest.raises(DocumentNotFoundError):
            await pipeline.run(999)

        assert provider.embedding_calls == []

    async def test_reingest_replaces_previous_generation(
        self, pipeline, db, vector_store, document_id
    ):
        first = await pipeline.run(document_id)

        conn = db.get_connection()
        conn.execute(
            "UPDATE documents SET content = ? WHERE id = ?", ("short body", document_id)
        )
        conn.commit()
        conn.close()

        second = await pipeline.run(document_id)

        assert second.status is VectorStatus.COMPLETED
        assert second.fragment_count == 1
        assert db.get_vector_row_ids(document_id=document_id) == second.vector_ids
        assert not set(first.vector_ids) & set(db.get_vector_row_ids())
        assert vector_store.index.ntotal == 1

        fragments = db.get_fragments(document_id)
        assert len(fragments) == 1
        assert fragments[0]["content"] == "short body"

    async def test_empty_content(self, pipeline, provider, db, event_log):
        document_id = db.insert_document("Empty", "", owner_id=1)

        result = await pipeline.run(document_id)

        assert result.status is VectorStatus.COMPLETED
        assert result.fragment_count == 0
        assert provider.embedding_calls == []
        assert event_log.progress == [10, 20, 100]
        assert db.get_document(document_id).vector_progress == 100

    async def test_fragment_write_failure_still_completes(
        self, pipeline, db, document_id, monkeypatch
    ):
        def broken_replace(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db, "replace_fragments", broken_replace)

        result = await pipeline.run(document_id)

        assert result.status is VectorStatus.COMPLETED
        assert db.get_document(document_id).vector_status is VectorStatus.COMPLETED
        assert len(db.get_vector_row_ids(document_id=document_id)) == 3

    async def test_stale_vector_cleanup_failure_still_completes(
        self, pipeline, db, vector_store, document_id, monkeypatch
    ):
        first = await pipeline.run(document_id)

        async def broken_delete(*args, **kwargs):
            raise RuntimeError("index locked")

        monkeypatch.setattr(vector_store, "delete_document", broken_delete)

        second = await pipeline.run(document_id)

        assert second.status is VectorStatus.COMPLETED
        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.COMPLETED
        assert document.vector_progress == 100
        # Old generation lingers until the next successful cleanup
        assert set(db.get_vector_row_ids(document_id=document_id)) == set(
            first.vector_ids + second.vector_ids
        )
        assert [f["vector_id"] for f in db.get_fragments(document_id)] == (
            second.vector_ids
        )

    async def test_stale_processing_status_is_restarted(
        self, pipeline, db, document_id
    ):
        db.update_vector_state(document_id, VectorStatus.PROCESSING, 48)

        result = await pipeline.run(document_id)

        assert result.status is VectorStatus.COMPLETED

    async def test_concurrent_runs_are_serialized(
        self, pipeline, provider, db, event_log
    ):
        document_id = db.insert_document("Short", "one fragment only", owner_id=1)
        provider.gate = asyncio.Event()

        first = asyncio.create_task(pipeline.run(document_id))
        second = asyncio.create_task(pipeline.run(document_id))
        await wait_for_embedding_call(provider)

        assert pipeline.locks.is_locked(document_id)
        assert len(provider.embedding_calls) == 1

        provider.gate.set()
        results = await asyncio.gather(first, second)

        assert [r.status for r in results] == [VectorStatus.COMPLETED] * 2
        assert event_log.progress == [10, 20, 90, 100, 10, 20, 90, 100]
        assert db.get_vector_row_ids(document_id=document_id) == results[1].vector_ids
        assert not pipeline.locks.is_locked(document_id)

    async def test_different_documents_run_in_parallel(self, pipeline, provider, db):
        first_id = db.insert_document("A", "first document", owner_id=1)
        second_id = db.insert_document("B", "second document", owner_id=2)
        provider.gate = asyncio.Event()

        tasks = [
            asyncio.create_task(pipeline.run(first_id)),
            asyncio.create_task(pipeline.run(second_id)),
        ]
        while len(provider.embedding_calls) < 2:
            await asyncio.sleep(0)

        provider.gate.set()
        results = await asyncio.gather(*tasks)

        assert [r.status for r in results] == [VectorStatus.COMPLETED] * 2

    async def test_cancellation_marks_failed(self, pipeline, provider, db, document_id):
        provider.gate = asyncio.Event()

        task = asyncio.create_task(pipeline.run(document_id))
        await wait_for_embedding_call(provider)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        document = db.get_document(document_id)
        assert document.vector_status is VectorStatus.FAILED
        assert document.vector_progress == 0
        assert db.count_vector_rows() == 0
