"""
Hybrid lexical + vector retrieval over graph nodes.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models.core import GraphNode, node_text
from ..utils.config import SearchConfig
from ..utils.logging_config import get_logger
from .graph_store import GraphStore
from .lexical_index import LexicalIndex
from .reranking import RankedResult, Reranker, reciprocal_rank_fusion
from .vector_index import VectorIndex

logger = get_logger(__name__)

NodePredicate = Callable[[GraphNode], bool]

LEXICAL_SOURCE = 'lexical'
VECTOR_SOURCE = 'vector'


class HybridSearch:
    """Keeps the lexical and vector indexes in step with the graph and queries both."""

    def __init__(self,
                 store: GraphStore,
                 reranker: Reranker,
                 config: Optional[SearchConfig] = None,
                 lexical: Optional[LexicalIndex] = None,
                 vectors: Optional[VectorIndex] = None):
        self.store = store
        self.reranker = reranker
        self.config = config or SearchConfig()
        self.lexical = lexical or LexicalIndex(k1=self.config.bm25_k1, b=self.config.bm25_b)
        self.vectors = vectors or VectorIndex()

    def index_node(self, node: GraphNode) -> None:
        """(Re)index a node's text, and its embedding when it has one."""
        self.lexical.add_document(node.id, node_text(node))
        if node.embedding is not None:
            self.vectors.add_embedding(node.id, node.embedding)

    def remove_node(self, node_id: str) -> None:
        self.lexical.remove_document(node_id)
        self.vectors.remove_embedding(node_id)

    async def _filtered(self, hits: Sequence[Tuple[str, float]], predicate: Optional[NodePredicate],
                        limit: int) -> List[Tuple[str, float]]:
        kept = []
        for node_id, score in hits:
            node = await self.store.get_node(node_id)
            if node is None or (predicate is not None and not predicate(node)):
                continue
            kept.append((node_id, score))
            if len(kept) >= limit:
                break
        return kept

    async def retrieve(self,
                       query: str,
                       query_vector: Optional[Sequence[float]],
                       limit: int,
                       predicate: Optional[NodePredicate] = None) -> Dict[str, List[Tuple[str, float]]]:
        """
        Gather candidates from both indexes.

        Each index is searched exhaustively so filtering never starves the pool,
        then cut to ``limit * candidate_multiplier`` per source.

        Args:
            query: Free-text query
            query_vector: Query embedding (vector source skipped if None)
            limit: Number of results the caller wants
            predicate: Node filter applied before cutting

        Returns:
            Source name to (node_id, native score) pairs
        """
        pool = max(1, limit * self.config.candidate_multiplier)
        candidates = {LEXICAL_SOURCE: await self._filtered(self.lexical.search(query, len(self.lexical)), predicate, pool)}

        if query_vector is not None and len(self.vectors):
            hits = [(node_id, score) for node_id, score in self.vectors.search_with_scores(query_vector, len(self.vectors))
                    if score > self.config.min_vector_score]
            candidates[VECTOR_SOURCE] = await self._filtered(hits, predicate, pool)

        logger.debug(f'Retrieved {", ".join(f"{len(hits)} {source}" for source, hits in candidates.items())} candidates')
        return candidates

    async def similar_nodes(self,
                            query: str,
                            query_vector: Optional[Sequence[float]],
                            limit: int,
                            predicate: Optional[NodePredicate] = None) -> List[Tuple[str, float]]:
        """Nearest nodes by rank fusion alone, without feature reranking."""
        candidates = await self.retrieve(query, query_vector, limit, predicate)
        fused = reciprocal_rank_fusion(candidates, self.reranker.config.rrf_k)
        return sorted(fused.items(), key=lambda item: (-item[1], item[0]))[:limit]

    async def search(self,
                     query: str,
                     query_vector: Optional[Sequence[float]],
                     limit: int,
                     predicate: Optional[NodePredicate] = None,
                     reference_time: Optional[datetime] = None,
                     center_node_id: Optional[str] = None,
                     query_node_ids: Optional[Sequence[str]] = None) -> List[RankedResult]:
        """Retrieve from both indexes and rerank."""
        candidates = await self.retrieve(query, query_vector, limit, predicate)
        return await self.reranker.rerank(query,
                                          candidates,
                                          max_results=limit,
                                          reference_time=reference_time,
                                          center_node_id=center_node_id,
                                          query_node_ids=query_node_ids)

    def clear(self) -> None:
        self.lexical.clear()
        self.vectors.clear()
