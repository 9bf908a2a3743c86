"""
Cosine-similarity search over node embeddings.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm or the lengths differ."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


class VectorIndex:
    """Node id to fixed-length vector, searched exhaustively by cosine similarity."""

    def __init__(self, dimension: Optional[int] = None):
        """
        Args:
            dimension: Expected vector length (taken from the first vector if None)
        """
        self.dimension = dimension
        self._configured_dimension = dimension
        self._vectors: Dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._vectors

    def _as_vector(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float64)
        if array.ndim != 1:
            raise ValueError(f'Expected a flat vector, got shape {array.shape}')
        if self.dimension is not None and array.shape[0] != self.dimension:
            raise ValueError(f'Expected vector of length {self.dimension}, got {array.shape[0]}')
        return array

    def add_embedding(self, node_id: str, vector: Sequence[float]) -> None:
        array = self._as_vector(vector)
        if self.dimension is None:
            self.dimension = array.shape[0]
        self._vectors[node_id] = array

    def remove_embedding(self, node_id: str) -> bool:
        return self._vectors.pop(node_id, None) is not None

    def get_embedding(self, node_id: str) -> Optional[List[float]]:
        vector = self._vectors.get(node_id)
        return vector.tolist() if vector is not None else None

    def search_with_scores(self, query_vector: Sequence[float], limit: int = 10) -> List[Tuple[str, float]]:
        """
        Rank every stored vector by cosine similarity to the query.

        Args:
            query_vector: Query embedding
            limit: Maximum number of results

        Returns:
            (node_id, similarity) pairs sorted by descending similarity
        """
        if not self._vectors:
            return []

        query = self._as_vector(query_vector)
        query_norm = np.linalg.norm(query)
        ids = list(self._vectors)
        matrix = np.vstack([self._vectors[node_id] for node_id in ids])
        norms = np.linalg.norm(matrix, axis=1)

        denominator = norms * query_norm
        with np.errstate(divide='ignore', invalid='ignore'):
            scores = np.where(denominator > 0, matrix @ query / denominator, 0.0)

        ranked = sorted(zip(ids, scores.tolist()), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]

    def clear(self) -> None:
        self._vectors.clear()
        self.dimension = self._configured_dimension
