"""Question answering over a user's own indexed documents.

Handles:
- Query embedding generation
- Owner-scoped FAISS search
- Grounding prompt construction
- Generation call and answer extraction
"""
import time
from dataclasses import dataclass, field
from typing import Dict, List

import structlog

from article_rag import config
from article_rag.errors import GenerationError, QueryError
from article_rag.llm_client import ArkClient
from article_rag.rag.embeddings import EmbeddingGateway
from article_rag.rag.store_faiss import FAISSVectorStore, SearchHit

logger = structlog.get_logger()

PROMPT_TEMPLATE = """You are the user's personal knowledge assistant. The following content comes from the user's own articles:
{context}

User question:
{question}

Answer strictly from the article content above. Do not make up facts that are not in it."""


@dataclass
class Answer:
    """Answer plus the fragments it was grounded on."""

    answer: str
    sources: List[str]
    hits: List[SearchHit] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)


def build_context(hits: List[SearchHit]) -> str:
    """Join retrieved fragments in ranked order."""
    return "\n\n".join(hit.content for hit in hits)


def build_prompt(context: str, question: str) -> str:
    return PROMPT_TEMPLATE.format(context=context, question=question)


class AnswerService:
    """Retrieval-augmented answering for one owner's content."""

    def __init__(
        self,
        client: ArkClient,
        gateway: EmbeddingGateway,
        vector_store: FAISSVectorStore,
        top_k: int = None,
    ):
        """Initialize the answer service.

        Args:
            client: Provider client used for the generation call
            gateway: Embedding gateway used for the question
            vector_store: Vector index searched per owner
            top_k: Number of fragments to retrieve (default from config)
        """
        self.client = client
        self.gateway = gateway
        self.vector_store = vector_store
        self.top_k = top_k or config.RETRIEVAL_TOP_K

    async def answer(self, owner_id: int, question: str) -> Answer:
        """Answer a question using only the owner's indexed fragments.

        An empty search result still goes to the model, with an empty context.

        Raises:
            QueryError: If embedding, search or generation fails
        """
        timings: Dict[str, float] = {}
        start = time.perf_counter()

        logger.info(
            "rag_query_started",
            owner_id=owner_id,
            question_length=len(question),
            top_k=self.top_k,
        )

        stage = "embedding"
        try:
            stage_start = time.perf_counter()
            query_embedding = await self.gateway.embed_one(question)
            timings["embedding"] = time.perf_counter() - stage_start

            stage = "search"
            stage_start = time.perf_counter()
            hits = await self.vector_store.search(
                owner_id, query_embedding, top_k=self.top_k
            )
            timings["search"] = time.perf_counter() - stage_start

            stage = "llm"
            stage_start = time.perf_counter()
            prompt = build_prompt(build_context(hits), question)
            result = await self.client.responses([{"role": "user", "content": prompt}])
            answer = result.first_assistant_text()
            if answer is None:
                raise GenerationError("No assistant message found in response")
            timings["llm"] = time.perf_counter() - stage_start

        except Exception as e:
            logger.error(
                "rag_query_failed",
                owner_id=owner_id,
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise QueryError(f"RAG query failed at {stage}: {e}", stage=stage) from e

        timings["total_internal"] = time.perf_counter() - start

        logger.info(
            "rag_query_completed",
            owner_id=owner_id,
            hits=len(hits),
            answer_length=len(answer),
            top_distance=hits[0].distance if hits else None,
        )

        return Answer(
            answer=answer,
            sources=[hit.content for hit in hits],
            hits=hits,
            timings=timings,
        )
