"""Batched embedding generation on top of the provider client.

Each provider response is normalized before use. The provider may answer with
a single item or a list of items, and each item may carry a position index.
Placement rules, applied per batch of ``n`` texts:

1. every item has an index and the indices are exactly ``0..n-1``: place by index
2. no item has a non-zero index (absent or all zero): keep positional order
3. anything else: the response is malformed and the call fails

Rule 2 exists because a zero index cannot be told apart from a missing one.
"""
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from article_rag import config
from article_rag.errors import EmbeddingError
from article_rag.llm_client import ArkClient, EmbeddingItem

logger = structlog.get_logger()

BatchCallback = Callable[[int, int], Awaitable[None]]


def order_embedding_items(
    items: Sequence[EmbeddingItem], expected: int
) -> List[List[float]]:
    """Return the vectors of a batch in input order.

    Raises:
        EmbeddingError: If the item count or indices cannot be reconciled
    """
    if len(items) != expected:
        raise EmbeddingError(
            f"Provider returned {len(items)} embeddings for {expected} inputs"
        )

    indices = [item.index for item in items]

    if all(index is not None for index in indices) and sorted(indices) == list(
        range(expected)
    ):
        ordered: List[Optional[List[float]]] = [None] * expected
        for item in items:
            ordered[item.index] = item.embedding
        return ordered

    if all(not index for index in indices):
        return [item.embedding for item in items]

    raise EmbeddingError(f"Inconsistent embedding indices in response: {indices}")


class EmbeddingGateway:
    """Turns texts into vectors with sequential, bounded-size provider calls."""

    def __init__(self, client: ArkClient, batch_size: int = None):
        """Initialize the gateway.

        Args:
            client: Provider client used for the embedding calls
            batch_size: Max texts per provider call (default from config)
        """
        self.client = client
        self.batch_size = config.EMBED_BATCH_SIZE if batch_size is None else batch_size
        if self.batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {self.batch_size}")

    async def embed(
        self, texts: Sequence[str], on_batch: Optional[BatchCallback] = None
    ) -> List[List[float]]:
        """Generate embeddings for texts, batch by batch.

        Args:
            texts: Texts to embed
            on_batch: Awaited with (embedded_so_far, total) after each batch

        Returns:
            One vector per text, in input order

        Raises:
            EmbeddingError: If any batch fails; nothing is returned for the others
        """
        if not texts:
            return []

        total = len(texts)
        embeddings: List[List[float]] = []

        for start in range(0, total, self.batch_size):
            batch = list(texts[start : start + self.batch_size])

            response = await self.client.embeddings(batch)
            vectors = order_embedding_items(response.as_list(), len(batch))
            embeddings.extend(vectors)

            logger.debug(
                "embeddings_batch_generated",
                batch_size=len(batch),
                total_so_far=len(embeddings),
                total=total,
            )

            if on_batch is not None:
                await on_batch(len(embeddings), total)

        return embeddings

    async def embed_one(self, text: str) -> List[float]:
        """Embed a single text as a one-item batch."""
        vectors = await self.embed([text])
        if not vectors or not vectors[0]:
            raise EmbeddingError("Empty embedding returned for text")
        return vectors[0]
