"""Main Quart application for the article RAG service."""
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request

from article_rag import config
from article_rag.db import Database
from article_rag.errors import IngestionQueueFull, QueryError
from article_rag.llm_client import ArkClient
from article_rag.rag.answerer import AnswerService
from article_rag.rag.chunker import TextChunker
from article_rag.rag.embeddings import EmbeddingGateway
from article_rag.rag.ingest import IngestPipeline
from article_rag.rag.store_faiss import FAISSVectorStore
from article_rag.rag.worker import IngestionWorker

logger = structlog.get_logger()

OWNER_HEADER = "X-User-Id"


def configure_logging(level: str = None) -> None:
    """Configure structured JSON logging."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


@dataclass
class RagComponents:
    """Everything the HTTP layer needs, built once at startup."""

    db: Database
    client: ArkClient
    gateway: EmbeddingGateway
    vector_store: FAISSVectorStore
    pipeline: IngestPipeline
    worker: IngestionWorker
    answer_service: AnswerService


def build_components(
    db_path: Path = None,
    index_dir: Path = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    dimension: int = None,
    nlist: int = None,
    nprobe: int = None,
    train_size: int = None,
    chunk_size: int = None,
    chunk_overlap: int = None,
    batch_size: int = None,
    workers: int = None,
) -> RagComponents:
    """Wire the RAG components together; arguments override config."""
    db = Database(db_path)
    db.init_database()

    client = ArkClient(transport=transport)
    gateway = EmbeddingGateway(client, batch_size=batch_size)

    vector_store = FAISSVectorStore(
        db,
        index_dir=index_dir,
        dimension=dimension,
        nlist=nlist,
        nprobe=nprobe,
        train_size=train_size,
    )
    vector_store.init_or_load()

    pipeline = IngestPipeline(
        db,
        gateway,
        vector_store,
        chunker=TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap),
    )

    return RagComponents(
        db=db,
        client=client,
        gateway=gateway,
        vector_store=vector_store,
        pipeline=pipeline,
        worker=IngestionWorker(pipeline, concurrency=workers),
        answer_service=AnswerService(client, gateway, vector_store),
    )


class QueryRequest(BaseModel):
    question: str = Field(min_length=1, max_length=2000)


def _owner_id() -> Optional[int]:
    """Owner of the request; authentication happens upstream and sets the header."""
    value = request.headers.get(OWNER_HEADER, "")
    try:
        return int(value)
    except ValueError:
        return None


def create_app(components: RagComponents = None) -> Quart:
    """Create the Quart app around a set of RAG components."""
    configure_logging()
    rag = components or build_components()

    app = Quart(__name__)

    @app.before_serving
    async def start_worker():
        rag.worker.start()

    @app.after_serving
    async def stop_worker():
        await rag.worker.stop()

    @app.route("/api/rag/query", methods=["POST"])
    async def rag_query():
        """Answer a question from the caller's own documents.

        Expects JSON body:
        {
            "question": "free text question"
        }

        Returns JSON:
        {
            "answer": "model answer",
            "sources": ["fragment text", ...],
            "timings": {"embedding": 0.1, "search": 0.01, "llm": 1.2, ...}
        }
        """
        start = time.perf_counter()
        owner_id = _owner_id()
        if owner_id is None:
            return jsonify({"error": "Unauthorized"}), 401

        data = await request.get_json(silent=True)
        try:
            body = QueryRequest.model_validate(data or {})
        except ValidationError as e:
            logger.warning("invalid_query_request", errors=e.errors())
            return jsonify({"error": "Invalid request: 'question' is required"}), 400

        question = body.question.strip()
        if not question:
            return jsonify({"error": "Question cannot be empty"}), 400

        try:
            result = await rag.answer_service.answer(owner_id, question)
        except QueryError as e:
            return jsonify({"error": f"RAG query failed: {e}"}), 500

        timings = dict(result.timings)
        timings["total_handler"] = time.perf_counter() - start

        return jsonify(
            {
                "answer": result.answer,
                "sources": result.sources,
                "timings": timings,
            }
        )

    @app.route("/api/documents/<int:document_id>/reindex", methods=["POST"])
    async def reindex_document(document_id: int):
        """Reset a document's ingestion state and queue it for re-vectorization."""
        owner_id = _owner_id()
        if owner_id is None:
            return jsonify({"error": "Unauthorized"}), 401

        document = rag.db.get_document(document_id)
        if document is None:
            return jsonify({"error": "Document not found"}), 404
        if document.owner_id != owner_id:
            return jsonify({"error": "Not authorized"}), 403

        if rag.pipeline.locks.is_locked(document_id):
            # The live run keeps its status; the queued run restarts from 10
            logger.info("reindex_during_live_run", document_id=document_id)
        else:
            rag.db.reset_vector_state(document_id)
        try:
            queued = rag.worker.run(document_id)
        except IngestionQueueFull:
            return jsonify({"error": "Ingestion queue is full, try again later"}), 503

        logger.info("reindex_triggered", document_id=document_id, queued=queued)
        return jsonify({"message": "Re-indexing triggered"}), 202

    @app.route("/api/documents/<int:document_id>/vector-status", methods=["GET"])
    async def vector_status(document_id: int):
        """Polled ingestion status of a document."""
        owner_id = _owner_id()
        if owner_id is None:
            return jsonify({"error": "Unauthorized"}), 401

        document = rag.db.get_document(document_id)
        if document is None:
            return jsonify({"error": "Document not found"}), 404
        if document.owner_id != owner_id:
            return jsonify({"error": "Not authorized"}), 403

        return jsonify(
            {
                "document_id": document.id,
                "status": document.vector_status.value,
                "progress": document.vector_progress,
            }
        )

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - vector index loaded and worker pool running."""
        stats = rag.vector_store.get_stats()
        ready = stats["initialized"] and rag.worker.running
        checks = {
            "status": "healthy" if ready else "unhealthy",
            "vector_index": stats,
            "worker": rag.worker.running,
        }
        return jsonify(checks), 200 if ready else 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


if __name__ == "__main__":
    # For development - run with hypercorn "article_rag.main:create_app()" in production
    create_app().run(host="0.0.0.0", port=5000, debug=True)
