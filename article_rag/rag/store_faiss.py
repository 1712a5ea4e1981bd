"""FAISS vector store for owner-scoped semantic search.

Handles:
- IVF_FLAT index over squared L2 distances with a fixed probe count
- Exact flat staging index until there are enough vectors to train the IVF
- Row attributes (owner, document, fragment index, content) kept in SQLite
  under the same id FAISS stores
- Owner-filtered search and per-document removal
- Index and metadata persistence
"""
import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from article_rag import config
from article_rag.db import Database
from article_rag.errors import VectorIndexError

logger = structlog.get_logger()

STAGING_INDEX = "IndexIDMap2(IndexFlatL2)"
IVF_INDEX = "IndexIVFFlat"


@dataclass
class IndexedRow:
    """One row to insert: the embedding plus the attributes stored beside it."""

    owner_id: int
    document_id: int
    fragment_index: int
    embedding: List[float]
    content: str


@dataclass
class SearchHit:
    """A single nearest-neighbour result."""

    id: int
    distance: float
    content: str
    document_id: int
    fragment_index: int
    owner_id: int


class FAISSVectorStore:
    """FAISS-based vector index with SQLite-backed row attributes."""

    def __init__(
        self,
        db: Database,
        index_dir: Path = None,
        dimension: int = None,
        nlist: int = None,
        nprobe: int = None,
        train_size: int = None,
        content_max_length: int = None,
    ):
        """Initialize the FAISS vector store.

        Args:
            db: Database holding the vector_rows table
            index_dir: Directory to store index and metadata (default: DATA_DIR)
            dimension: Embedding dimension (default from config)
            nlist: Number of IVF lists (default from config)
            nprobe: Lists probed per search (default from config)
            train_size: Vectors needed before the IVF is trained (default from config)
            content_max_length: Max characters of content per row
        """
        self.db = db
        self.index_dir = Path(index_dir or config.DATA_DIR)
        self.dimension = dimension or config.EMBEDDING_DIM
        self.nlist = nlist or config.VECTOR_NLIST
        self.nprobe = nprobe or config.VECTOR_NPROBE
        self.train_size = max(train_size or config.VECTOR_TRAIN_SIZE, self.nlist)
        self.content_max_length = content_max_length or config.VECTOR_CONTENT_MAX_LENGTH

        self.index_path = self.index_dir / "vectors.index"
        self.metadata_path = self.index_dir / "metadata.json"

        self.index: Optional[faiss.Index] = None
        self.metadata: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

        logger.info(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            dimension=self.dimension,
            nlist=self.nlist,
            nprobe=self.nprobe,
        )

    @property
    def is_trained_ivf(self) -> bool:
        return self.metadata.get("index_type") == IVF_INDEX

    def init_new_index(self) -> None:
        """Initialize an empty staging index."""
        self.index = faiss.IndexIDMap2(faiss.IndexFlatL2(self.dimension))
        self.metadata = {
            "embedding_dimension": self.dimension,
            "index_type": STAGING_INDEX,
            "metric": "L2",
            "nlist": self.nlist,
            "nprobe": self.nprobe,
            "vector_count": 0,
        }

        logger.info(
            "faiss_index_initialized",
            dimension=self.dimension,
            index_type=STAGING_INDEX,
        )

    def load_index(self) -> None:
        """Load existing FAISS index from disk.

        Raises:
            FileNotFoundError: If index files don't exist
            ValueError: If dimension mismatch detected
            RuntimeError: If loading fails
        """
        if not self.index_path.exists():
            raise FileNotFoundError(f"Index not found: {self.index_path}")

        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata not found: {self.metadata_path}")

        try:
            with open(self.metadata_path, "r") as f:
                self.metadata = json.load(f)
        except Exception as e:
            raise RuntimeError(f"Failed to load metadata: {e}") from e

        stored_dim = self.metadata.get("embedding_dimension")
        if stored_dim != self.dimension:
            raise ValueError(
                f"Dimension mismatch: index was built with dim={stored_dim}, "
                f"but the configured dimension is {self.dimension}. "
                f"Please rebuild the index."
            )

        try:
            self.index = faiss.read_index(str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to load FAISS index: {e}") from e

        row_count = self.db.count_vector_rows()
        if row_count != self.index.ntotal:
            logger.warning(
                "faiss_index_row_count_mismatch",
                vector_count=self.index.ntotal,
                row_count=row_count,
            )

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            vector_count=self.index.ntotal,
            index_type=self.metadata.get("index_type"),
        )

    def save_index(self) -> None:
        """Save FAISS index and metadata to disk.

        Raises:
            RuntimeError: If save fails
        """
        if self.index is None:
            raise RuntimeError("No index to save. Initialize or load an index first.")

        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.metadata["vector_count"] = self.index.ntotal

        try:
            faiss.write_index(self.index, str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to save FAISS index: {e}") from e

        try:
            with open(self.metadata_path, "w") as f:
                json.dump(self.metadata, f, indent=2)
        except Exception as e:
            raise RuntimeError(f"Failed to save metadata: {e}") from e

        logger.debug(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=self.index.ntotal,
        )

    def init_or_load(self) -> None:
        """Load the index from disk if present, otherwise start a new one."""
        if self.index_path.exists() and self.metadata_path.exists():
            logger.info("existing_index_detected", path=str(self.index_path))
            self.load_index()
        else:
            logger.info("no_index_found_initializing_new")
            self.init_new_index()

    def _require_index(self) -> faiss.Index:
        if self.index is None:
            raise VectorIndexError("No index initialized. Call init_or_load() first.")
        return self.index

    def _as_matrix(self, embeddings: Sequence[Sequence[float]]) -> np.ndarray:
        vectors = np.asarray(embeddings, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise VectorIndexError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got shape {vectors.shape}"
            )
        return np.ascontiguousarray(vectors)

    def _train_ivf(self) -> None:
        """Move every staged vector into a freshly trained IVF index."""
        staging = self.index
        ids = faiss.vector_to_array(staging.id_map).astype(np.int64)
        vectors = staging.index.reconstruct_n(0, staging.ntotal)

        nlist = min(self.nlist, len(ids))
        quantizer = faiss.IndexFlatL2(self.dimension)
        ivf = faiss.IndexIVFFlat(quantizer, self.dimension, nlist, faiss.METRIC_L2)
        ivf.train(vectors)
        ivf.add_with_ids(vectors, ids)

        self.index = ivf
        self.metadata["index_type"] = IVF_INDEX
        self.metadata["nlist"] = nlist

        logger.info("faiss_ivf_trained", nlist=nlist, vector_count=ivf.ntotal)

    async def insert_chunks(self, rows: Sequence[IndexedRow]) -> List[int]:
        """Bulk insert rows; returned ids are aligned with the input order.

        Raises:
            VectorIndexError: If validation, the row insert or the FAISS add fails
        """
        if not rows:
            return []

        for row in rows:
            if len(row.content) > self.content_max_length:
                raise VectorIndexError(
                    f"Content of fragment {row.fragment_index} exceeds "
                    f"{self.content_max_length} characters"
                )
        vectors = self._as_matrix([row.embedding for row in rows])

        async with self._lock:
            index = self._require_index()

            try:
                ids = self.db.insert_vector_rows(
                    [
                        {
                            "owner_id": row.owner_id,
                            "document_id": row.document_id,
                            "fragment_index": row.fragment_index,
                            "content": row.content,
                        }
                        for row in rows
                    ]
                )
            except Exception as e:
                raise VectorIndexError(f"Failed to store vector rows: {e}") from e

            id_array = np.asarray(ids, dtype=np.int64)
            try:
                index.add_with_ids(vectors, id_array)
                if not self.is_trained_ivf and self.index.ntotal >= self.train_size:
                    self._train_ivf()
                self.save_index()
            except Exception as e:
                logger.error("faiss_add_failed", error=str(e), count=len(ids))
                self.index.remove_ids(id_array)
                self.db.delete_vector_rows(ids)
                raise VectorIndexError(f"Failed to add vectors: {e}") from e

        logger.info(
            "vectors_added",
            count=len(ids),
            total_vectors=self.index.ntotal,
        )

        return ids

    async def search(
        self, owner_id: int, query_embedding: Sequence[float], top_k: int = None
    ) -> List[SearchHit]:
        """Nearest neighbours of a query vector among one owner's rows.

        The owner filter is always applied, both inside FAISS and again when the
        rows are read back.

        Returns:
            Hits sorted by ascending squared L2 distance, at most top_k
        """
        if top_k is None:
            top_k = config.RETRIEVAL_TOP_K

        query_vector = self._as_matrix([query_embedding])

        async with self._lock:
            index = self._require_index()

            owner_ids = self.db.get_vector_row_ids(owner_id=owner_id)
            top_k = min(top_k, len(owner_ids))
            if top_k <= 0:
                logger.info("vector_search_no_owner_rows", owner_id=owner_id)
                return []

            allowed = np.ascontiguousarray(owner_ids, dtype=np.int64)
            selector = faiss.IDSelectorBatch(len(allowed), faiss.swig_ptr(allowed))
            if self.is_trained_ivf:
                params = faiss.SearchParametersIVF(
                    sel=selector, nprobe=min(self.nprobe, index.nlist)
                )
            else:
                params = faiss.SearchParameters(sel=selector)

            try:
                distances, labels = index.search(query_vector, top_k, params=params)
            except Exception as e:
                raise VectorIndexError(f"Vector search failed: {e}") from e

        pairs = [
            (int(label), float(distance))
            for label, distance in zip(labels[0].tolist(), distances[0].tolist())
            if label >= 0
        ]
        rows = self.db.get_vector_rows([label for label, _ in pairs], owner_id=owner_id)

        hits = []
        for label, distance in pairs:
            row = rows.get(label)
            if row is None:
                logger.warning("vector_row_missing_or_foreign", vector_id=label)
                continue
            hits.append(
                SearchHit(
                    id=label,
                    distance=distance,
                    content=row["content"],
                    document_id=row["document_id"],
                    fragment_index=row["fragment_index"],
                    owner_id=row["owner_id"],
                )
            )

        hits.sort(key=lambda hit: hit.distance)

        logger.info(
            "vector_search_completed",
            owner_id=owner_id,
            top_k=top_k,
            results_found=len(hits),
        )

        return hits[:top_k]

    async def delete_document(
        self, document_id: int, keep_ids: Sequence[int] = ()
    ) -> int:
        """Remove a document's rows from the index, except keep_ids.

        Returns:
            Number of vectors removed
        """
        keep = set(keep_ids)

        async with self._lock:
            index = self._require_index()
            stale = [
                vector_id
                for vector_id in self.db.get_vector_row_ids(document_id=document_id)
                if vector_id not in keep
            ]
            if not stale:
                return 0

            try:
                removed = index.remove_ids(np.asarray(stale, dtype=np.int64))
                self.db.delete_vector_rows(stale)
                self.save_index()
            except Exception as e:
                raise VectorIndexError(f"Failed to delete vectors: {e}") from e

        logger.info(
            "document_vectors_removed",
            document_id=document_id,
            removed=int(removed),
        )
        return int(removed)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store.

        Returns:
            Dictionary with store statistics
        """
        if self.index is None:
            return {
                "initialized": False,
                "vector_count": 0,
                "dimension": self.dimension,
            }

        return {
            "initialized": True,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "index_type": self.metadata.get("index_type"),
            "index_exists_on_disk": self.index_path.exists(),
        }
