"""SQLite persistence for the article RAG service.

Stores:
- Documents and their ingestion state (vector_status / vector_progress)
- Fragment rows, replaced wholesale on every successful ingestion run
- Vector index rows (owner, document, fragment index, content) keyed by the
  id FAISS stores for the embedding
"""
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import structlog

from article_rag import config
from article_rag.documents import Document, VectorStatus

logger = structlog.get_logger()

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds
_MAX_PARAMS = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunked(ids: Sequence[int], size: int = _MAX_PARAMS) -> Iterator[Sequence[int]]:
    for start in range(0, len(ids), size):
        yield ids[start : start + size]


class Database:
    """Thin wrapper around a SQLite file; one short-lived connection per call."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or config.DB_PATH)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '',
                    content TEXT NOT NULL,
                    owner_id INTEGER NOT NULL,
                    vector_status TEXT NOT NULL DEFAULT 'pending',
                    vector_progress INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)

            # Fragment metadata, one generation per document
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS fragments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    fragment_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    vector_id INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(document_id, fragment_index)
                )
            """)

            # Rows mirrored by the FAISS index; id is the FAISS id
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS vector_rows (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    document_id INTEGER NOT NULL,
                    fragment_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_vector_rows_owner
                ON vector_rows(owner_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_vector_rows_document
                ON vector_rows(document_id)
            """)

            conn.commit()
            logger.info("database_initialized", db_path=str(self.db_path))

        except Exception as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def insert_document(
        self, title: str, content: str, owner_id: int, tags: str = ""
    ) -> int:
        """Insert a document and return its id."""
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """
                INSERT INTO documents (title, tags, content, owner_id, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (title, tags, content, owner_id, _now()),
            )
            conn.commit()
            return cursor.lastrowid

        except Exception as e:
            conn.rollback()
            logger.error("document_insert_failed", error=str(e))
            raise
        finally:
            conn.close()

    def get_document(self, document_id: int) -> Optional[Document]:
        """Fetch a document, or None if it does not exist."""
        conn = self.get_connection()

        try:
            row = conn.execute(
                """
                SELECT id, title, tags, content, owner_id,
                       vector_status, vector_progress
                FROM documents WHERE id = ?
                """,
                (document_id,),
            ).fetchone()

            if row is None:
                return None

            return Document(
                id=row["id"],
                title=row["title"],
                tags=row["tags"],
                content=row["content"],
                owner_id=row["owner_id"],
                vector_status=VectorStatus(row["vector_status"]),
                vector_progress=row["vector_progress"],
            )
        finally:
            conn.close()

    def update_vector_state(
        self,
        document_id: int,
        status: Optional[VectorStatus] = None,
        progress: Optional[int] = None,
    ) -> None:
        """Write vector_status and/or vector_progress for a document."""
        assignments = []
        params: List[Any] = []
        if status is not None:
            assignments.append("vector_status = ?")
            params.append(VectorStatus(status).value)
        if progress is not None:
            assignments.append("vector_progress = ?")
            params.append(int(progress))
        if not assignments:
            return

        assignments.append("updated_at = ?")
        params.extend([_now(), document_id])

        conn = self.get_connection()
        try:
            conn.execute(
                f"UPDATE documents SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(
                "vector_state_update_failed", document_id=document_id, error=str(e)
            )
            raise
        finally:
            conn.close()

    def reset_vector_state(self, document_id: int) -> None:
        """Put a document back to pending/0 before a restart."""
        self.update_vector_state(document_id, VectorStatus.PENDING, 0)

    # ------------------------------------------------------------------
    # Fragments
    # ------------------------------------------------------------------

    def replace_fragments(
        self, document_id: int, fragments: Iterable[Dict[str, Any]]
    ) -> int:
        """Replace a document's fragment rows in a single transaction.

        Args:
            document_id: Document whose fragments are replaced
            fragments: Dicts with fragment_index, content and vector_id

        Returns:
            Number of fragment rows written
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("DELETE FROM fragments WHERE document_id = ?", (document_id,))
            deleted = cursor.rowcount

            created_at = _now()
            rows = [
                (
                    document_id,
                    fragment["fragment_index"],
                    fragment["content"],
                    fragment["vector_id"],
                    created_at,
                )
                for fragment in fragments
            ]
            cursor.executemany(
                """
                INSERT INTO fragments (
                    document_id, fragment_index, content, vector_id, created_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )

            conn.commit()
            logger.info(
                "fragments_replaced",
                document_id=document_id,
                deleted=deleted,
                inserted=len(rows),
            )
            return len(rows)

        except Exception as e:
            conn.rollback()
            logger.error(
                "fragments_replace_failed", document_id=document_id, error=str(e)
            )
            raise
        finally:
            conn.close()

    def get_fragments(self, document_id: int) -> List[Dict[str, Any]]:
        """Fragments of a document ordered by fragment_index."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT id, document_id, fragment_index, content, vector_id, created_at
                FROM fragments WHERE document_id = ?
                ORDER BY fragment_index
                """,
                (document_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Vector rows
    # ------------------------------------------------------------------

    def insert_vector_rows(self, rows: Sequence[Dict[str, Any]]) -> List[int]:
        """Insert vector index rows and return their ids in input order."""
        if not rows:
            return []

        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            created_at = _now()
            ids = []
            for row in rows:
                cursor.execute(
                    """
                    INSERT INTO vector_rows (
                        owner_id, document_id, fragment_index, content, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        row["owner_id"],
                        row["document_id"],
                        row["fragment_index"],
                        row["content"],
                        created_at,
                    ),
                )
                ids.append(cursor.lastrowid)

            conn.commit()
            return ids

        except Exception as e:
            conn.rollback()
            logger.error("vector_rows_insert_failed", error=str(e))
            raise
        finally:
            conn.close()

    def get_vector_row_ids(
        self, owner_id: Optional[int] = None, document_id: Optional[int] = None
    ) -> List[int]:
        """Ids of vector rows matching an owner and/or a document."""
        clauses = []
        params: List[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if document_id is not None:
            clauses.append("document_id = ?")
            params.append(document_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self.get_connection()
        try:
            rows = conn.execute(
                f"SELECT id FROM vector_rows {where} ORDER BY id", params
            ).fetchall()
            return [row["id"] for row in rows]
        finally:
            conn.close()

    def get_vector_rows(
        self, ids: Sequence[int], owner_id: int
    ) -> Dict[int, Dict[str, Any]]:
        """Rows for the given ids that belong to owner_id, keyed by id."""
        if not ids:
            return {}

        conn = self.get_connection()
        try:
            found: Dict[int, Dict[str, Any]] = {}
            for batch in _chunked(list(ids)):
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    f"""
                    SELECT id, owner_id, document_id, fragment_index, content
                    FROM vector_rows
                    WHERE owner_id = ? AND id IN ({placeholders})
                    """,
                    [owner_id, *batch],
                ).fetchall()
                found.update({row["id"]: dict(row) for row in rows})
            return found
        finally:
            conn.close()

    def delete_vector_rows(self, ids: Sequence[int]) -> int:
        """Delete vector rows by id; returns the number of rows removed."""
        if not ids:
            return 0

        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            deleted = 0
            for batch in _chunked(list(ids)):
                placeholders = ",".join("?" * len(batch))
                cursor.execute(
                    f"DELETE FROM vector_rows WHERE id IN ({placeholders})", batch
                )
                deleted += cursor.rowcount
            conn.commit()
            return deleted

        except Exception as e:
            conn.rollback()
            logger.error("vector_rows_delete_failed", error=str(e))
            raise
        finally:
            conn.close()

    def count_vector_rows(self) -> int:
        conn = self.get_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM vector_rows").fetchone()[0]
        finally:
            conn.close()
