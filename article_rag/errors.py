"""Exceptions raised by the RAG subsystem."""
from typing import Optional


class RagError(RuntimeError):
    """Base class for every failure raised by the RAG subsystem."""


class ConfigurationError(ValueError):
    """Invalid static configuration (e.g. chunk overlap >= chunk size)."""


class DocumentNotFoundError(RagError):
    """The requested document does not exist in the content store."""

    def __init__(self, document_id: int):
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class ProviderError(RagError):
    """A model provider call failed (network, HTTP status or business error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingError(ProviderError):
    """Embedding call failed or returned an unusable payload."""


class GenerationError(ProviderError):
    """Generation call failed or returned no assistant message."""


class VectorIndexError(RagError):
    """Vector index insert, search or delete failed."""


class QueryError(RagError):
    """A question could not be answered; `stage` names the step that failed."""

    def __init__(self, message: str, stage: str):
        super().__init__(message)
        self.stage = stage


class InvalidStageTransition(RagError):
    """An ingestion run tried to move its status or progress backwards."""


class IngestionQueueFull(RagError):
    """The background ingestion queue has no room for another document."""
