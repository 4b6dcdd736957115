"""Vector indexes used to rank stored embeddings against a query.

The store feeds every ``(id, vector)`` pair of a full scan into a fresh
index and asks it for the top-k keys. Scores are cosine similarities.
Vectors with zero magnitude score NaN and always rank after every
finite score.
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple
import numpy as np
import structlog

from pdfrag import config
from pdfrag.errors import DataError

logger = structlog.get_logger()

ScoredKey = Tuple[str, float]


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity ``a.q / (|a||q|)`` of each row of ``matrix`` with ``query``.

    Rows (or a query) of zero magnitude score NaN.

    Raises:
        DataError: If the row length differs from the query length
    """
    if matrix.ndim != 2 or matrix.shape[1:] != query.shape:
        raise DataError(
            f"Vector length mismatch: rows have shape {matrix.shape[1:]}, query {query.shape}"
        )

    with np.errstate(divide="ignore", invalid="ignore"):
        return (matrix @ query) / (np.linalg.norm(matrix, axis=1) * np.linalg.norm(query))


def rank_order(scores: np.ndarray) -> np.ndarray:
    """Indices sorting ``scores`` descending, NaN last, ties in input order."""
    keyed = np.where(np.isnan(scores), -np.inf, scores)
    return np.argsort(-keyed, kind="stable")


class VectorIndex(ABC):
    """Interface shared by every ranking backend."""

    def __init__(self):
        self.dimension: Optional[int] = None

    def _check_dimension(self, vector: np.ndarray) -> None:
        if vector.ndim != 1 or vector.shape[0] == 0:
            raise DataError("Embedding must be a non-empty flat vector")
        if self.dimension is None:
            self.dimension = vector.shape[0]
        elif vector.shape[0] != self.dimension:
            raise DataError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got {vector.shape[0]}"
            )

    @abstractmethod
    def add(self, key: str, vector: Sequence[float]) -> None:
        """Add a vector under ``key``.

        Raises:
            DataError: If the vector dimension differs from the index dimension
        """

    @abstractmethod
    def search(self, query: Sequence[float], top_k: int) -> List[ScoredKey]:
        """Return up to ``top_k`` ``(key, score)`` pairs, best first."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class LinearScanIndex(VectorIndex):
    """Exact brute-force cosine ranking, O(n*d) per query."""

    def __init__(self):
        super().__init__()
        self._keys: List[str] = []
        self._vectors: List[np.ndarray] = []

    def add(self, key: str, vector: Sequence[float]) -> None:
        array = np.asarray(vector, dtype=np.float64)
        self._check_dimension(array)
        self._keys.append(key)
        self._vectors.append(array)

    def search(self, query: Sequence[float], top_k: int) -> List[ScoredKey]:
        if not self._keys or top_k <= 0:
            return []

        q = np.asarray(query, dtype=np.float64)
        if q.shape != (self.dimension,):
            raise DataError(
                f"Query dimension mismatch: expected {self.dimension}, got {q.size}"
            )

        scores = cosine_scores(np.vstack(self._vectors), q)

        order = rank_order(scores)[:top_k]
        return [(self._keys[i], float(scores[i])) for i in order]

    def __len__(self) -> int:
        return len(self._keys)


def create_index(kind: str = None) -> VectorIndex:
    """Build an empty index of the configured kind.

    Args:
        kind: "linear" (default from config.VECTOR_INDEX) or "faiss"

    Raises:
        ValueError: On an unknown index kind
    """
    kind = (kind or config.VECTOR_INDEX).lower()

    if kind == "linear":
        return LinearScanIndex()
    if kind == "faiss":
        from pdfrag.rag.faiss_index import FaissFlatIndex

        return FaissFlatIndex()

    raise ValueError(f"Unknown vector index kind: {kind}")
