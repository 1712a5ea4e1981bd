"""Document model and the content-store interfaces the RAG core consumes.

The content store itself (article CRUD, ownership, paywalls) lives outside this
package. The core only needs to read a document and write back the two
``vector_*`` fields.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol


class VectorStatus(str, Enum):
    """Ingestion state of a document."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Document:
    """A document as seen by the ingestion pipeline."""

    id: int
    title: str
    tags: str
    content: str
    owner_id: int
    vector_status: VectorStatus = VectorStatus.PENDING
    vector_progress: int = 0

    def embedding_text(self, fragment: str) -> str:
        """Text sent to the embedding model for one fragment of this document."""
        return f"{self.title} {self.tags}\n{fragment}"


class DocumentSource(Protocol):
    def get_document(self, document_id: int) -> Optional[Document]:
        ...


class StatusStore(Protocol):
    def update_vector_state(
        self,
        document_id: int,
        status: Optional[VectorStatus] = None,
        progress: Optional[int] = None,
    ) -> None:
        ...
