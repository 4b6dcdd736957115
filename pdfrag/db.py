"""SQLite embedding store for pdfrag.

Stores:
- Text chunks with their embedding vectors (packed little-endian float64)
- Collections, one per ingested source document

Every operation reports failures on ``EmbeddingStore.errors`` and returns
an empty, false or ``None`` result instead of raising.
"""
import json
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
import numpy as np
import structlog

from pdfrag import config
from pdfrag.errors import DataError, ErrorCallback, ErrorChannel, RagError, StoreError
from pdfrag.rag.index import create_index

logger = structlog.get_logger()

VECTOR_ENCODING = "float64"
_VECTOR_DTYPE = np.dtype("<f8")

# Value of the ``operation`` column for a regular document row
OPERATION_ADD = 1


def encode_vector(embedding: Sequence[float]) -> bytes:
    """Pack an embedding into the stored blob format."""
    return np.asarray(embedding, dtype=_VECTOR_DTYPE).tobytes()


def decode_vector(blob: Optional[bytes]) -> np.ndarray:
    """Unpack a stored blob.

    Raises:
        StoreError: If the blob is empty or not a whole number of floats
    """
    if not blob:
        raise StoreError("Empty stored vector")
    if len(blob) % _VECTOR_DTYPE.itemsize:
        raise StoreError(f"Stored vector has invalid length {len(blob)}")
    return np.frombuffer(blob, dtype=_VECTOR_DTYPE)


@dataclass
class StoredChunk:
    """A stored chunk, addressed by its insertion sequence number."""

    id: str
    collection: str
    text: str
    sequence: int

    @property
    def source(self) -> str:
        """Name of the document the chunk was cut from."""
        return self.id.split(":")[0]


@dataclass
class SearchResult:
    """A single ranked chunk."""

    chunk_id: str
    text: str
    sequence: int
    score: float

    @property
    def source(self) -> str:
        return self.chunk_id.split(":")[0]


class EmbeddingStore:
    """Chunk and collection storage with brute-force similarity search."""

    def __init__(
        self,
        db_path: Union[str, Path] = None,
        index_kind: str = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        """Open (and create if needed) the embedding database.

        Args:
            db_path: SQLite file path or ":memory:" (default from config.DB_PATH)
            index_kind: Vector index used for ranking (default from config.VECTOR_INDEX)
            on_error: Optional callback connected to the error channel before opening
        """
        self.db_path = str(db_path or config.DB_PATH)
        self.index_kind = index_kind
        self.errors = ErrorChannel("store")
        if on_error is not None:
            self.errors.connect(on_error)

        self.conn: Optional[sqlite3.Connection] = None
        self._dimension: Optional[int] = None

        if self._open():
            self._create_tables()

    def _open(self) -> bool:
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path)
            self.conn.row_factory = sqlite3.Row
        except (sqlite3.Error, OSError) as e:
            self.conn = None
            self.errors.report(StoreError(f"Error opening database: {e}"), db_path=self.db_path)
            return False

        logger.info("embedding_store_opened", db_path=self.db_path)
        return True

    def _create_tables(self) -> None:
        self._execute(
            "creating embeddings table",
            """
            CREATE TABLE IF NOT EXISTS embeddings (
                seq_id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                operation INTEGER NOT NULL,
                topic TEXT NOT NULL,
                id TEXT NOT NULL,
                document TEXT NOT NULL,
                vector BLOB,
                encoding TEXT,
                metadata TEXT
            )
            """,
            commit=True,
        )
        self._execute(
            "creating embeddings index",
            "CREATE INDEX IF NOT EXISTS idx_embeddings_id ON embeddings(id)",
            commit=True,
        )
        self._execute(
            "creating collections table",
            """
            CREATE TABLE IF NOT EXISTS collections (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                topic TEXT NOT NULL,
                UNIQUE (name)
            )
            """,
            commit=True,
        )

    def _execute(
        self, action: str, sql: str, params: Sequence[Any] = (), commit: bool = False
    ) -> Optional[sqlite3.Cursor]:
        """Run one statement; report and return None on failure."""
        if self.conn is None:
            self.errors.report(StoreError(f"Error {action}: database is not open"))
            return None

        try:
            cursor = self.conn.execute(sql, params)
            if commit:
                self.conn.commit()
            return cursor
        except sqlite3.Error as e:
            if commit:
                self.conn.rollback()
            self.errors.report(StoreError(f"Error {action}: {e}"))
            return None

    def _fetchall(
        self, action: str, sql: str, params: Sequence[Any] = ()
    ) -> Optional[List[sqlite3.Row]]:
        cursor = self._execute(action, sql, params)
        if cursor is None:
            return None
        try:
            return cursor.fetchall()
        except sqlite3.Error as e:
            self.errors.report(StoreError(f"Error {action}: {e}"))
            return None

    # Collections

    def add_collection(self, name: str, topic: Optional[str] = None) -> bool:
        """Record an ingested document. Duplicate names are reported.

        Returns:
            True if the collection was inserted
        """
        cursor = self._execute(
            "inserting collection",
            "INSERT INTO collections (id, name, topic) VALUES (?, ?, ?)",
            (str(uuid.uuid4()), name, topic if topic is not None else name),
            commit=True,
        )
        if cursor is None:
            return False

        logger.info("collection_added", name=name)
        return True

    def has_collection(self, name: str) -> bool:
        rows = self._fetchall(
            "selecting collection",
            "SELECT id FROM collections WHERE name = ?",
            (name,),
        )
        return bool(rows)

    def list_collections(self) -> List[str]:
        """Collection names in insertion order."""
        rows = self._fetchall(
            "selecting collections",
            "SELECT name FROM collections ORDER BY rowid",
        )
        return [row["name"] for row in rows or []]

    def collection_at(self, index: int) -> Optional[str]:
        """Name of the collection at 0-based insertion position ``index``."""
        if index < 0:
            return None

        rows = self._fetchall(
            "selecting collection",
            "SELECT name FROM collections ORDER BY rowid LIMIT 1 OFFSET ?",
            (index,),
        )
        return rows[0]["name"] if rows else None

    # Documents

    @property
    def dimension(self) -> Optional[int]:
        """Dimension of the stored embeddings, None while no valid vector is stored.

        Taken from the oldest row whose vector decodes; malformed rows are
        skipped here just as they are during a search.
        """
        if self._dimension is None:
            cursor = self._execute(
                "selecting dimension",
                """
                SELECT id, vector FROM embeddings
                WHERE operation = ? AND vector IS NOT NULL
                ORDER BY seq_id
                """,
                (OPERATION_ADD,),
            )
            if cursor is None:
                return None

            try:
                for row in cursor:
                    try:
                        self._dimension = decode_vector(row["vector"]).size
                        break
                    except StoreError as e:
                        logger.warning("stored_vector_skipped", id=row["id"], error=str(e))
            except sqlite3.Error as e:
                self.errors.report(StoreError(f"Error selecting dimension: {e}"))
            finally:
                cursor.close()
        return self._dimension

    def add_document(
        self,
        id: str,
        text: str,
        embedding: Sequence[float],
        collection: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store a chunk and its embedding.

        Same as ``insert_document``, but failures are reported on ``errors``
        instead of raised.

        Returns:
            True if a new row was written
        """
        try:
            return self.insert_document(id, text, embedding, collection, metadata)
        except RagError as e:
            self.errors.report(e, id=id)
            return False

    def insert_document(
        self,
        id: str,
        text: str,
        embedding: Sequence[float],
        collection: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store a chunk and its embedding, raising on failure.

        Skipped when a row with the same id or a byte-identical vector
        already exists. The vector comparison is exact, so nearly identical
        embeddings are not treated as duplicates. The existence check and
        the insert are a single statement.

        Returns:
            True if a new row was written, False if it was a duplicate

        Raises:
            DataError: If the embedding is empty or has the wrong dimension
            StoreError: If the database is not open or the insert fails
        """
        try:
            vector = np.asarray(embedding, dtype=_VECTOR_DTYPE)
        except (TypeError, ValueError) as e:
            raise DataError(f"Invalid embedding for {id}: {e}") from e

        if vector.ndim != 1 or vector.size == 0:
            raise DataError(f"Empty embedding for document {id}")

        if self.conn is None:
            raise StoreError("Error inserting document: database is not open")

        dimension = self.dimension
        if dimension is not None and vector.size != dimension:
            raise DataError(
                f"Embedding dimension mismatch for {id}: expected {dimension}, "
                f"got {vector.size}"
            )

        blob = vector.tobytes()
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO embeddings (operation, topic, id, document, vector, encoding, metadata)
                SELECT ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (SELECT 1 FROM embeddings WHERE id = ? OR vector = ?)
                """,
                (
                    OPERATION_ADD,
                    collection,
                    id,
                    text,
                    blob,
                    VECTOR_ENCODING,
                    json.dumps(metadata) if metadata else None,
                    id,
                    blob,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Error inserting document: {e}") from e

        if cursor.rowcount == 0:
            logger.debug("document_already_exists", id=id)
            return False

        self._dimension = vector.size
        return True

    def remove_document(self, id: str) -> bool:
        """Delete a chunk by id.

        Returns:
            Whether the delete statement succeeded (not whether a row existed)
        """
        cursor = self._execute(
            "deleting document",
            "DELETE FROM embeddings WHERE id = ?",
            (id,),
            commit=True,
        )
        if cursor is None:
            return False

        self._dimension = None
        logger.info("document_removed", id=id, rows=cursor.rowcount)
        return True

    def get_vector(self, id: str) -> Optional[List[float]]:
        """Stored embedding of a chunk, decoded."""
        rows = self._fetchall(
            "selecting vector",
            "SELECT vector FROM embeddings WHERE id = ? ORDER BY seq_id LIMIT 1",
            (id,),
        )
        if not rows:
            return None

        try:
            return decode_vector(rows[0]["vector"]).tolist()
        except StoreError as e:
            self.errors.report(e, id=id)
            return None

    def document_at(self, sequence: int) -> Optional[StoredChunk]:
        """Chunk with insertion sequence number ``sequence``."""
        rows = self._fetchall(
            "selecting document",
            "SELECT seq_id, id, topic, document FROM embeddings WHERE seq_id = ?",
            (sequence,),
        )
        if not rows:
            return None

        row = rows[0]
        return StoredChunk(
            id=row["id"],
            collection=row["topic"],
            text=row["document"],
            sequence=row["seq_id"],
        )

    def find_documents(
        self, query_embedding: Sequence[float], topk: int = 5
    ) -> List[SearchResult]:
        """Rank every stored chunk against a query embedding.

        Scoring uses only ids and vectors from a full scan; text and sequence
        numbers are looked up afterwards for the top-k winners only.

        Args:
            query_embedding: Query vector
            topk: Maximum number of results

        Returns:
            SearchResult list sorted by descending cosine similarity
        """
        query = np.asarray(query_embedding, dtype=np.float64)
        if query.ndim != 1 or query.size == 0:
            self.errors.report(DataError("Query embedding is empty"))
            return []

        dimension = self.dimension
        if dimension is not None and query.size != dimension:
            self.errors.report(
                DataError(
                    f"Query dimension mismatch: expected {dimension}, got {query.size}"
                )
            )
            return []

        rows = self._fetchall(
            "selecting documents",
            "SELECT id, vector FROM embeddings WHERE operation = ? ORDER BY seq_id",
            (OPERATION_ADD,),
        )
        if rows is None:
            return []

        index = create_index(self.index_kind)
        skipped = 0
        for row in rows:
            try:
                vector = decode_vector(row["vector"])
                if vector.size != query.size:
                    raise DataError(
                        f"Stored vector has dimension {vector.size}, query has {query.size}"
                    )
                index.add(row["id"], vector)
            except RagError as e:
                skipped += 1
                logger.warning("stored_vector_skipped", id=row["id"], error=str(e))

        try:
            ranked = index.search(query, topk)
        except DataError as e:
            self.errors.report(e)
            return []

        results = []
        for chunk_id, score in ranked:
            metadata = self._fetchall(
                "selecting metadata",
                "SELECT seq_id, document FROM embeddings WHERE id = ? ORDER BY seq_id LIMIT 1",
                (chunk_id,),
            )
            if not metadata:
                continue

            results.append(
                SearchResult(
                    chunk_id=chunk_id,
                    text=metadata[0]["document"],
                    sequence=metadata[0]["seq_id"],
                    score=score,
                )
            )

        logger.info(
            "documents_found",
            scanned=len(rows),
            skipped=skipped,
            top_k=topk,
            results_returned=len(results),
        )

        return results

    def document_count(self) -> int:
        rows = self._fetchall("counting documents", "SELECT COUNT(*) AS n FROM embeddings")
        return rows[0]["n"] if rows else 0

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the store."""
        return {
            "db_path": self.db_path,
            "document_count": self.document_count(),
            "collection_count": len(self.list_collections()),
            "dimension": self.dimension,
            "index_kind": self.index_kind or config.VECTOR_INDEX,
        }

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            logger.info("embedding_store_closed", db_path=self.db_path)

    def __enter__(self) -> "EmbeddingStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
