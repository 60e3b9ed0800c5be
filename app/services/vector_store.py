"""
In-process vector index.

Vectors are stored as rows of a float32 numpy matrix kept unit-length, so
cosine similarity is a single matrix-vector product.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from app.services.embedding import normalize_vector

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """A scored hit from either index."""

    id: str
    content: str
    score: float
    metadata: Dict[str, Any]


class VectorStore:
    """Cosine-similarity index over chunk embeddings."""

    def __init__(self, dimension: Optional[int] = None) -> None:
        self.dimension = dimension
        self._ids: List[str] = []
        self._contents: List[str] = []
        self._metadata: List[Dict[str, Any]] = []
        self._matrix = np.zeros((0, dimension or 0), dtype=np.float32)

    def __len__(self) -> int:
        return len(self._ids)

    def upsert(self, ids: List[str], contents: List[str], vectors: List[np.ndarray],
               metadata: List[Dict[str, Any]]) -> None:
        """Insert or replace entries; all lists are aligned by position."""
        if not ids:
            return
        rows = np.vstack([normalize_vector(v) for v in vectors])
        if self.dimension is None:
            self.dimension = rows.shape[1]
            self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        if rows.shape[1] != self.dimension:
            raise ValueError(
                f"Vector dimension {rows.shape[1]} does not match index dimension {self.dimension}"
            )

        replaced = set(ids) & set(self._ids)
        if replaced:
            self.delete(list(replaced))

        self._ids.extend(ids)
        self._contents.extend(contents)
        self._metadata.extend(metadata)
        self._matrix = np.vstack([self._matrix, rows])

    def search(self, query_vector: np.ndarray, top_k: int) -> List[SearchResult]:
        if not self._ids or top_k <= 0:
            return []
        query = normalize_vector(query_vector)
        if query.shape[0] != self.dimension:
            raise ValueError(
                f"Query dimension {query.shape[0]} does not match index dimension {self.dimension}"
            )

        scores = self._matrix @ query
        k = min(top_k, len(self._ids))
        # argpartition then sort the head; stable ties fall back to insertion order
        head = np.argpartition(-scores, k - 1)[:k]
        order = head[np.lexsort((head, -scores[head]))]
        return [
            SearchResult(
                id=self._ids[i],
                content=self._contents[i],
                score=float(scores[i]),
                metadata=self._metadata[i],
            )
            for i in order
        ]

    def delete(self, ids: List[str]) -> int:
        """Remove entries by id; returns how many were removed."""
        drop = set(ids)
        keep = [i for i, chunk_id in enumerate(self._ids) if chunk_id not in drop]
        removed = len(self._ids) - len(keep)
        if removed:
            self._ids = [self._ids[i] for i in keep]
            self._contents = [self._contents[i] for i in keep]
            self._metadata = [self._metadata[i] for i in keep]
            self._matrix = self._matrix[np.asarray(keep, dtype=np.intp)]
        return removed
