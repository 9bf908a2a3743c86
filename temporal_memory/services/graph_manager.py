"""
Graph Manager: the façade exposing ingest, search, snapshot and clear.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from ..models.core import (COMMUNITY_TYPE, ENTITY_PREFIX, EPISODE_TYPE, MENTIONS_EDGE, GraphEdge, GraphFilter, GraphNode,
                           GraphSnapshot, Message, SearchFilters, SearchOptions, SearchResult, type_matches)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.bedrock_rerank import BedrockRerank
from ..utils.config import AppConfig
from ..utils.config import config as default_config
from ..utils.health_check import get_system_info
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .community import CommunityBuilder
from .embedding import BedrockEmbeddingService, EmbeddingCapability, EmbeddingError, embed_texts
from .extraction import BedrockExtractionService, ExtractionCapability, ExtractionClient, ExtractionError
from .graph_store import GraphStore, GraphStoreError, InMemoryGraphStore
from .hybrid_search import HybridSearch, NodePredicate
from .identity import IdentityGenerator
from .ingestion import IngestionPipeline
from .relevance import BedrockRelevanceScorer, LLMRelevanceScorer, RelevanceScorer
from .reranking import Reranker

logger = get_logger(__name__)

DEFAULT_SEARCH_TYPES = [ENTITY_PREFIX, COMMUNITY_TYPE]
VALIDITY_BOOST = 0.05

MessageLike = Union[Message, Mapping[str, Any]]


class GraphManagerError(Exception):
    """Custom exception for graph manager errors."""
    pass


def confidence_for(node: GraphNode, score: float) -> float:
    """Final score, nudged up for each end of a well-defined validity window, clamped to [0, 1]."""
    confidence = score
    if node.valid_at is not None:
        confidence += VALIDITY_BOOST
    if node.validity_end is not None:
        confidence += VALIDITY_BOOST
    return max(0.0, min(1.0, confidence))


class GraphManager:
    """Composes the store, indexes, reranker and ingestion pipeline of one memory engine."""

    def __init__(self,
                 extraction: ExtractionCapability,
                 embedder: EmbeddingCapability,
                 config: Optional[AppConfig] = None,
                 store: Optional[GraphStore] = None,
                 relevance_scorer: Optional[RelevanceScorer] = None):
        """
        Initialize the graph manager.

        Args:
            extraction: Extraction capability (LLM-backed task processor)
            embedder: Embedding capability
            config: AppConfig instance, uses default if None
            store: Graph store backend, in-memory if None
            relevance_scorer: Cross-encoder scorer; chosen from config.reranker.cross_encoder if None
        """
        self.config = config or default_config
        self.store = store or InMemoryGraphStore()
        self.identity = IdentityGenerator(self.store.hash_registry)
        self.extraction = ExtractionClient(extraction)
        self.embedder = embedder

        scorer = relevance_scorer or self._build_scorer()
        self.reranker = Reranker(self.store, self.config.reranker, scorer)
        self.search_index = HybridSearch(self.store, self.reranker, self.config.search)
        self.communities = CommunityBuilder(self.store, self.identity, self.search_index, self.extraction, self.embedder,
                                            self.config.ingestion)
        self.pipeline = IngestionPipeline(self.store, self.identity, self.search_index, self.extraction, self.embedder,
                                          self.communities, self.config.ingestion)

        logger.info(f'Initialized GraphManager (cross encoder: {type(scorer).__name__ if scorer else "none"})')

    def _build_scorer(self) -> Optional[RelevanceScorer]:
        backend = self.config.reranker.cross_encoder
        if backend == 'llm':
            return LLMRelevanceScorer(self.extraction)
        if backend == 'bedrock':
            return BedrockRelevanceScorer(BedrockRerank(self.config.bedrock_rerank))
        if backend != 'none':
            logger.warning(f'Unknown cross encoder backend {backend!r}, cross-encoder scoring disabled')
        return None

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> 'GraphManager':
        """Build an engine backed by Amazon Bedrock for extraction, embeddings and (optionally) reranking."""
        config = config or default_config
        extraction = BedrockExtractionService(BedrockLLM(config.bedrock_llm))
        embedder = BedrockEmbeddingService(BedrockEmbed(config.bedrock_embed), config.bedrock_embed.cache_size)
        return cls(extraction, embedder, config=config)

    async def ingest(self, messages: Sequence[MessageLike], processing_layer: Optional[int] = None) -> None:
        """
        Ingest conversational turns.

        Args:
            messages: Message objects or dicts with id, body, role, timestamp and sessionId
            processing_layer: 1 = episodic, 2 = + semantic, 3 = + community (config default if None)

        Raises:
            ValueError: If a message is missing its id or sessionId, or the layer is not 1, 2 or 3
            GraphManagerError: If ingestion fails; episodes recorded before the failure are kept
        """
        if not messages:
            logger.warning('Empty messages provided for ingestion')
            return

        batch = [message if isinstance(message, Message) else Message.from_dict(message) for message in messages]
        layer = processing_layer or self.config.ingestion.default_processing_layer

        try:
            await self.pipeline.ingest(batch, layer)
        except ValueError:
            raise
        except (ExtractionError, EmbeddingError) as e:
            logger.error(f'Capability error during ingestion: {e}')
            raise GraphManagerError(f'Ingestion failed: {e}')
        except GraphStoreError as e:
            logger.error(f'Graph store error during ingestion: {e}')
            raise GraphManagerError(f'Ingestion failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error during ingestion: {e}')
            raise GraphManagerError(f'Ingestion failed: {e}')

    async def _role_scope(self, role: str) -> Set[str]:
        """Episodes spoken in the given role, and the entities they mention."""
        snapshot = await self.store.query(GraphFilter(node_types=[EPISODE_TYPE], metadata={'role': role}))
        allowed = {episode.id for episode in snapshot.nodes}
        for edge in snapshot.edges:
            if edge.type == MENTIONS_EDGE and edge.source_id in allowed:
                allowed.add(edge.target_id)
        return allowed

    async def _build_predicate(self, options: SearchOptions) -> NodePredicate:
        filters = options.filters or SearchFilters()
        node_types = filters.node_types or DEFAULT_SEARCH_TYPES
        timestamp = options.timestamp
        now = utc_now()
        time_range = filters.time_range
        role_scope = await self._role_scope(filters.role) if filters.role else None

        def predicate(node: GraphNode) -> bool:
            if not type_matches(node.type, node_types):
                return False
            if timestamp is not None:
                if not node.is_visible_at(timestamp):
                    return False
            elif node.expired_at is not None and node.expired_at <= now:
                return False
            if time_range is not None:
                start, end = time_range
                moment = node.valid_at or node.created_at
                if (start is not None and moment < start) or (end is not None and moment > end):
                    return False
            if role_scope is not None and node.id not in role_scope:
                return False
            return True

        return predicate

    async def search(self, query: str, options: Optional[Union[SearchOptions, Mapping[str, Any]]] = None) -> List[SearchResult]:
        """
        Hybrid search over the graph.

        Args:
            query: Free-text query
            options: SearchOptions or a dict with timestamp, limit, filters{role, timeRange, nodeTypes},
                centerNodeId and queryNodeIds

        Returns:
            Results sorted by descending score

        Raises:
            GraphManagerError: If embedding or reranking fails
        """
        if not query or not query.strip():
            return []
        if not isinstance(options, SearchOptions):
            options = SearchOptions.from_dict(options)
        limit = options.limit or self.config.search.default_limit

        try:
            query_vector = (await embed_texts(self.embedder, [query]))[0]
            predicate = await self._build_predicate(options)
            ranked = await self.search_index.search(query,
                                                    query_vector,
                                                    limit,
                                                    predicate=predicate,
                                                    reference_time=options.timestamp,
                                                    center_node_id=options.center_node_id,
                                                    query_node_ids=options.query_node_ids)
        except (ExtractionError, EmbeddingError) as e:
            logger.error(f'Capability error during search: {e}')
            raise GraphManagerError(f'Search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error during search: {e}')
            raise GraphManagerError(f'Search failed: {e}')

        results = []
        for item in ranked:
            node = await self.store.get_node(item.node_id)
            if node is None:
                logger.debug(f'Search hit {item.node_id} vanished before resolution')
                continue
            results.append(SearchResult(node=node, score=item.score, confidence=confidence_for(node, item.score),
                                        features=item.features))

        results.sort(key=lambda result: result.score, reverse=True)
        logger.debug(f'Search for {query!r} returned {len(results)} results')
        return results

    async def get_snapshot(self, graph_filter: Optional[Union[GraphFilter, Mapping[str, Any]]] = None) -> GraphSnapshot:
        """Nodes and edges matching a filter (GraphFilter or a dict with nodeTypes, edgeTypes, temporal, metadata)."""
        if not isinstance(graph_filter, GraphFilter):
            graph_filter = GraphFilter.from_dict(graph_filter)
        return await self.store.query(graph_filter)

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        return await self.store.get_node(node_id)

    async def get_edges_for_node(self, node_id: str, direction: str = 'both') -> List[GraphEdge]:
        return await self.store.get_edges_for_node(node_id, direction)

    async def clear(self) -> None:
        """Wipe the store, its id registry and both search indexes."""
        await self.store.clear()
        self.search_index.clear()
        logger.info('Cleared graph memory')

    def health(self) -> Dict[str, Any]:
        """
        Report component health for this engine's configuration.

        Returns:
            System information with per-component health, an overall healthy flag and the indexed document count
        """
        info = get_system_info(self.config)
        info['healthy'] = all(status.get('healthy', False) for status in info['health_status'].values())
        info['indexed_documents'] = len(self.search_index.lexical)
        if not info['healthy']:
            logger.warning('Graph memory has unhealthy components')
        return info
