"""
Multi-signal reranking: reciprocal rank fusion, feature scoring and MMR diversity.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..models.core import MENTIONS_EDGE, GraphNode, node_text
from ..utils.config import RerankerConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import age_in_days, utc_now
from .graph_store import GraphStore
from .relevance import RelevanceScorer
from .vector_index import cosine_similarity

logger = get_logger(__name__)

ScoredIds = Sequence[Tuple[str, float]]

MENTIONS_CAP = 5
PATH_DIVERSITY_CAP = 3
MAX_GRAPH_DEPTH = 4


@dataclass
class RankedResult:
    """A reranked candidate and the signals behind its score."""
    node_id: str
    score: float
    features: Dict[str, float] = field(default_factory=dict)


def rank_by_source(candidate_lists: Mapping[str, ScoredIds]) -> Dict[str, Dict[str, int]]:
    """Assign 1-based ranks within each source by descending native score."""
    ranks: Dict[str, Dict[str, int]] = {}
    for source, candidates in candidate_lists.items():
        ordered = sorted(candidates, key=lambda item: (-item[1], item[0]))
        source_ranks: Dict[str, int] = {}
        for node_id, _ in ordered:
            if node_id not in source_ranks:
                source_ranks[node_id] = len(source_ranks) + 1
        ranks[source] = source_ranks
    return ranks


def reciprocal_rank_fusion(candidate_lists: Mapping[str, ScoredIds], k: int = 60) -> Dict[str, float]:
    """
    Fuse ranked lists.

    A candidate's fused score is the mean of ``1/(k + rank)`` over the sources it
    appears in.

    Args:
        candidate_lists: Source name to (node_id, native score) pairs
        k: Rank smoothing constant

    Returns:
        node_id to fused score
    """
    contributions: Dict[str, List[float]] = {}
    for source_ranks in rank_by_source(candidate_lists).values():
        for node_id, rank in source_ranks.items():
            contributions.setdefault(node_id, []).append(1.0 / (k + rank))
    return {node_id: sum(values) / len(values) for node_id, values in contributions.items()}


def maximal_marginal_relevance(relevance: Sequence[Tuple[str, float]],
                               embeddings: Mapping[str, Optional[Sequence[float]]],
                               diversity_lambda: float = 0.5,
                               limit: int = 10) -> List[str]:
    """
    Select ids iteratively, trading relevance against similarity to what is already selected.

    Each step picks the remaining id maximizing
    ``lambda * relevance - (1 - lambda) * max cosine similarity to the selection``.
    Ids without an embedding count as dissimilar to everything.

    Args:
        relevance: (node_id, relevance) pairs
        embeddings: node_id to embedding
        diversity_lambda: Weight of relevance versus novelty
        limit: Number of ids to select

    Returns:
        Selected ids in selection order
    """
    remaining = dict(relevance)
    selected: List[str] = []

    while remaining and len(selected) < limit:
        best_id, best_value = None, -math.inf
        for node_id in sorted(remaining):
            vector = embeddings.get(node_id)
            max_similarity = 0.0
            if vector is not None:
                for chosen in selected:
                    other = embeddings.get(chosen)
                    if other is not None:
                        max_similarity = max(max_similarity, cosine_similarity(vector, other))
            value = diversity_lambda * remaining[node_id] - (1 - diversity_lambda) * max_similarity
            if value > best_value:
                best_id, best_value = node_id, value
        selected.append(best_id)
        del remaining[best_id]

    return selected


class Reranker:
    """Fuses source-tagged candidate lists and reorders them by weighted signals."""

    def __init__(self, store: GraphStore, config: Optional[RerankerConfig] = None, scorer: Optional[RelevanceScorer] = None):
        """
        Args:
            store: Graph store used to resolve candidates and compute graph features
            config: Reranker configuration (defaults if None)
            scorer: Cross-encoder relevance scorer (feature skipped if None)
        """
        self.store = store
        self.config = config or RerankerConfig()
        self.scorer = scorer

    async def _graph_features(self, node: GraphNode, reference_ids: List[str]) -> Dict[str, float]:
        distance = await self.store.shortest_path_length(node.id, reference_ids, max_depth=MAX_GRAPH_DEPTH)
        incoming = await self.store.get_edges_for_node(node.id, direction='in')
        mentions = sum(1 for edge in incoming if edge.type == MENTIONS_EDGE)

        paths = 0
        for reference_id in reference_ids:
            paths += await self.store.count_paths(node.id, reference_id, max_length=3, limit=PATH_DIVERSITY_CAP)

        return {
            'distance': 0.0 if distance is None else 1.0 / (1 + distance),
            'mentions': min(1.0, mentions / MENTIONS_CAP),
            'path_diversity': min(1.0, paths / PATH_DIVERSITY_CAP),
        }

    async def _features(self, node: GraphNode, fused: float, reference_time: datetime,
                        reference_ids: Optional[List[str]]) -> Dict[str, float]:
        edges = await self.store.get_edges_for_node(node.id)
        incoming = sum(1 for edge in edges if edge.target_id == node.id)
        age = age_in_days(node.valid_at or node.created_at, reference_time)

        features = {
            # Scaled so that rank 1 in every source scores 1.0
            'rrf': fused * (self.config.rrf_k + 1),
            'recency': math.exp(-self.config.decay_rate * age),
            'connectivity': min(1.0, len(edges) / self.config.connectivity_cap),
            'importance': min(1.0, incoming / self.config.importance_cap),
        }
        if reference_ids:
            features.update(await self._graph_features(node, reference_ids))
        return features

    def _combine(self, features: Dict[str, float]) -> float:
        weights = self.config.weights
        total_weight = 0.0
        total = 0.0
        for name, value in features.items():
            weight = getattr(weights, name, 0.0)
            total += weight * value
            total_weight += weight
        return total / total_weight if total_weight > 0 else 0.0

    async def rerank(self,
                     query: str,
                     candidate_lists: Mapping[str, ScoredIds],
                     max_results: Optional[int] = None,
                     reference_time: Optional[datetime] = None,
                     center_node_id: Optional[str] = None,
                     query_node_ids: Optional[Sequence[str]] = None) -> List[RankedResult]:
        """
        Rerank candidates from several retrieval sources.

        Args:
            query: Search query, used for cross-encoder scoring
            candidate_lists: Source name to (node_id, native score) pairs
            max_results: Result cap (config default if None)
            reference_time: Time recency is measured against (now if None)
            center_node_id: Enables graph-structural features relative to this node
            query_node_ids: Enables graph-structural features relative to these nodes

        Returns:
            Results above the minimum score, best first
        """
        max_results = max_results or self.config.max_results
        reference_time = reference_time or utc_now()
        fused = reciprocal_rank_fusion(candidate_lists, self.config.rrf_k)
        if not fused:
            return []

        nodes: List[GraphNode] = []
        for node_id in sorted(fused):
            node = await self.store.get_node(node_id)
            if node is None:
                logger.debug(f'Skipping vanished candidate {node_id}')
                continue
            nodes.append(node)

        reference_ids = [node_id for node_id in [center_node_id, *(query_node_ids or [])] if node_id]
        features = {node.id: await self._features(node, fused[node.id], reference_time, reference_ids) for node in nodes}

        if self.scorer is not None and self.config.weights.cross_encoder > 0 and nodes:
            relevance = await self.scorer.score(query, [node_text(node) for node in nodes])
            for node, value in zip(nodes, relevance):
                features[node.id]['cross_encoder'] = max(0.0, min(1.0, value))

        scored = [(node.id, self._combine(features[node.id])) for node in nodes]
        scored = [(node_id, score) for node_id, score in scored if score >= self.config.min_score]
        scored.sort(key=lambda item: (-item[1], item[0]))
        logger.debug(f'Reranked {len(fused)} candidates, {len(scored)} above min score {self.config.min_score}')

        if self.config.diversity_lambda is not None:
            embeddings = {node.id: node.embedding for node in nodes}
            order = maximal_marginal_relevance(scored, embeddings, self.config.diversity_lambda, max_results)
            scores = dict(scored)
            return [RankedResult(node_id, scores[node_id], features[node_id]) for node_id in order]

        return [RankedResult(node_id, score, features[node_id]) for node_id, score in scored[:max_results]]
