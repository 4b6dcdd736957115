"""FAISS-backed vector index.

Uses an exact ``IndexFlatIP`` over L2-normalized vectors, so inner product
equals cosine similarity. Scores are computed in float32.
"""
from typing import List, Sequence
import numpy as np
import faiss
import structlog

from pdfrag.errors import DataError
from pdfrag.rag.index import ScoredKey, VectorIndex

logger = structlog.get_logger()


class FaissFlatIndex(VectorIndex):
    """Cosine ranking through FAISS inner-product search."""

    def __init__(self):
        super().__init__()
        self.index = None
        self._keys: List[str] = []
        self._zero_keys: List[str] = []  # zero-magnitude vectors, score NaN

    def add(self, key: str, vector: Sequence[float]) -> None:
        array = np.asarray(vector, dtype=np.float32)
        self._check_dimension(array)

        if self.index is None:
            self.index = faiss.IndexFlatIP(self.dimension)

        norm = np.linalg.norm(array)
        if norm == 0:
            self._zero_keys.append(key)
            return

        self.index.add((array / norm).reshape(1, -1))
        self._keys.append(key)

    def search(self, query: Sequence[float], top_k: int) -> List[ScoredKey]:
        if top_k <= 0 or len(self) == 0:
            return []

        q = np.asarray(query, dtype=np.float32)
        if q.shape != (self.dimension,):
            raise DataError(
                f"Query dimension mismatch: expected {self.dimension}, got {q.size}"
            )

        norm = np.linalg.norm(q)
        k = min(top_k, len(self._keys))
        ranked = []
        if norm != 0 and k > 0:
            scores, positions = self.index.search((q / norm).reshape(1, -1), k)
            ranked = [
                (int(pos), float(score))
                for pos, score in zip(positions[0], scores[0])
                if pos >= 0
            ]
            # FAISS does not promise insertion order between equal scores
            ranked.sort(key=lambda item: (-item[1], item[0]))

        results: List[ScoredKey] = [(self._keys[pos], score) for pos, score in ranked]

        # Zero vectors (and everything, for a zero query) rank last
        leftovers = self._zero_keys if norm != 0 else self._keys + self._zero_keys
        results.extend((key, float("nan")) for key in leftovers)

        logger.debug("faiss_search_completed", top_k=top_k, results_found=len(results))
        return results[:top_k]

    def __len__(self) -> int:
        return len(self._keys) + len(self._zero_keys)
