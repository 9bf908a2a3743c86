"""
Three-layer ingestion pipeline: episodic, semantic and community.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set

from ..models.core import (EPISODE_TYPE, MENTIONS_EDGE, EntityContent, EpisodeContent, GraphEdge, GraphFilter, GraphNode,
                           Message, normalize_entity_type)
from ..models.tasks import (DedupeCandidate, DedupeNodesRequest, EntityDescriptor, ExtractedEntity, ExtractedRelationship,
                            ExtractEntitiesRequest, ExtractTemporalRequest, FactDescriptor, ResolveFactsRequest,
                            SummarizeNodeRequest)
from ..utils.config import IngestionConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, to_optional_datetime, utc_now
from .community import CommunityBuilder
from .embedding import EmbeddingCapability, embed_texts
from .extraction import ExtractionClient
from .graph_store import GraphStore
from .hybrid_search import HybridSearch
from .identity import IdentityGenerator

logger = get_logger(__name__)

PROCESSING_LAYERS = (1, 2, 3)
EPISODIC_LAYER = 1
SEMANTIC_LAYER = 2
COMMUNITY_LAYER = 3

DEFAULT_RELATION_TYPE = 'RELATES_TO'


def normalize_relation_type(raw: Optional[str]) -> str:
    """UPPER_SNAKE_CASE form of a relationship label."""
    label = re.sub(r'[^0-9A-Za-z]+', '_', raw or '').strip('_').upper()
    return label or DEFAULT_RELATION_TYPE


def entity_text(name: str, summary: str = '') -> str:
    return f'{name}: {summary}' if summary else name


def _episode_line(episode: GraphNode) -> str:
    return f'{episode.content.actor}: {episode.content.text}'


def _describe(node: GraphNode) -> EntityDescriptor:
    return EntityDescriptor(id=node.id, name=node.content.name, type=node.type, summary=node.content.summary)


def _fact(edge: GraphEdge) -> FactDescriptor:
    return FactDescriptor(id=edge.id,
                          source_id=edge.source_id,
                          target_id=edge.target_id,
                          type=edge.type,
                          description=edge.content,
                          valid_at=to_iso(edge.valid_at),
                          invalid_at=to_iso(edge.invalid_at))


@dataclass
class IngestionResult:
    """What one ingestion batch touched."""
    episode_ids: List[str] = field(default_factory=list)
    new_episode_ids: List[str] = field(default_factory=list)
    created_entity_ids: List[str] = field(default_factory=list)
    merged_entity_ids: List[str] = field(default_factory=list)
    edge_ids: List[str] = field(default_factory=list)
    invalidated_edge_ids: List[str] = field(default_factory=list)
    skipped_relationships: int = 0
    community_ids: List[str] = field(default_factory=list)

    @property
    def entity_ids(self) -> List[str]:
        return list(dict.fromkeys(self.created_entity_ids + self.merged_entity_ids))


@dataclass
class _Candidate:
    extracted: ExtractedEntity
    entity_type: str
    vector: List[float]
    target_id: Optional[str] = None


class IngestionPipeline:
    """Turns conversational turns into episodes, entities, facts and communities.

    Stages run strictly in order; whatever a stage committed stays in the store
    if a later stage fails.
    """

    def __init__(self,
                 store: GraphStore,
                 identity: IdentityGenerator,
                 search: HybridSearch,
                 extraction: ExtractionClient,
                 embedder: EmbeddingCapability,
                 communities: CommunityBuilder,
                 config: Optional[IngestionConfig] = None):
        self.store = store
        self.identity = identity
        self.search = search
        self.extraction = extraction
        self.embedder = embedder
        self.communities = communities
        self.config = config or IngestionConfig()

    async def ingest(self, messages: Sequence[Message], processing_layer: int = COMMUNITY_LAYER) -> IngestionResult:
        """
        Run the pipeline over one batch.

        Args:
            messages: Conversational turns
            processing_layer: 1 = episodic only, 2 = + semantic, 3 = + community

        Returns:
            IngestionResult describing the changes

        Raises:
            ValueError: If processing_layer is not 1, 2 or 3
            ExtractionError: If an extraction task fails (remaining work of the stage is abandoned)
            EmbeddingError: If embedding generation fails
        """
        if processing_layer not in PROCESSING_LAYERS:
            raise ValueError(f'processing_layer must be one of {PROCESSING_LAYERS}, got {processing_layer}')

        result = IngestionResult()
        if not messages:
            logger.warning('Empty message batch provided for ingestion')
            return result

        episodes = await self.add_episodes(messages, result)
        if processing_layer >= SEMANTIC_LAYER:
            await self.process_semantic(episodes, result)
        if processing_layer >= COMMUNITY_LAYER:
            await self.process_communities(episodes, result)

        logger.info(f'Ingested {len(episodes)} episodes at layer {processing_layer}: '
                    f'{len(result.created_entity_ids)} new entities, {len(result.merged_entity_ids)} merged, '
                    f'{len(result.edge_ids)} edges, {len(result.invalidated_edge_ids)} invalidated')
        return result

    # Stage 1

    async def add_episodes(self, messages: Sequence[Message], result: IngestionResult) -> List[GraphNode]:
        """Create an episode per message unless it already exists."""
        episodes = []
        for message in messages:
            content = EpisodeContent(actor=message.role,
                                     text=message.body,
                                     session_id=message.session_id,
                                     turn_id=message.id,
                                     timestamp=message.timestamp)
            episode_id = self.identity.generate_node_id(EPISODE_TYPE, content)

            async with self.store.locks.acquire(episode_id):
                episode = await self.store.get_node(episode_id)
                if episode is None:
                    episode = await self.store.add_node(
                        GraphNode(id=episode_id,
                                  type=EPISODE_TYPE,
                                  created_at=utc_now(),
                                  valid_at=message.timestamp,
                                  metadata={
                                      'role': message.role,
                                      'sessionId': message.session_id,
                                      'turnId': message.id
                                  },
                                  content=content))
                    self.search.index_node(episode)
                    result.new_episode_ids.append(episode_id)
                else:
                    logger.debug(f'Episode {episode_id} already recorded')

            episodes.append(episode)
            result.episode_ids.append(episode_id)
        return episodes

    # Stage 2

    async def _context_window(self, episodes: List[GraphNode]) -> List[str]:
        """Most recent prior episodes outside the batch, oldest first."""
        if self.config.context_window <= 0:
            return []
        batch_ids = {episode.id for episode in episodes}
        snapshot = await self.store.query(GraphFilter(node_types=[EPISODE_TYPE]))
        prior = [node for node in snapshot.nodes if node.id not in batch_ids]
        prior.sort(key=lambda node: (node.valid_at or node.created_at, node.id))
        return [_episode_line(node) for node in prior[-self.config.context_window:]]

    async def process_semantic(self, episodes: List[GraphNode], result: IngestionResult) -> List[GraphNode]:
        """Extract, deduplicate and link entities, then extract and resolve facts."""
        batch_text = '\n'.join(_episode_line(episode) for episode in episodes)
        context = await self._context_window(episodes)
        batch_time = min(episode.valid_at or episode.created_at for episode in episodes)

        extracted = await self.extraction.run(ExtractEntitiesRequest(text=batch_text, context=context))
        unique: Dict[tuple, ExtractedEntity] = {}
        for entity in extracted.entities:
            if not entity.name:
                continue
            key = (entity.name.lower(), normalize_entity_type(entity.type))
            if key not in unique or (entity.summary and not unique[key].summary):
                unique[key] = entity
        if not unique:
            logger.debug('No entities extracted from batch')
            return []

        entities = await self._resolve_entities(list(unique.values()), context, episodes, batch_time, result)
        await self._link_mentions(episodes, entities, result)
        await self._extract_relationships(batch_text, context, entities, batch_time, result)
        return entities

    async def _resolve_entities(self, extracted: List[ExtractedEntity], context: List[str], episodes: List[GraphNode],
                                batch_time: datetime, result: IngestionResult) -> List[GraphNode]:
        vectors = await embed_texts(self.embedder, [entity_text(entity.name, entity.summary) for entity in extracted])
        candidates = [
            _Candidate(extracted=entity, entity_type=normalize_entity_type(entity.type), vector=vector)
            for entity, vector in zip(extracted, vectors)
        ]

        dedupe_candidates = []
        for index, candidate in enumerate(candidates):
            own_id = self.identity.generate_node_id(candidate.entity_type, {
                'name': candidate.extracted.name,
                'type': candidate.entity_type
            })
            existing = await self.store.get_node(own_id)
            if existing is not None and existing.expired_at is None:
                # Same normalized name and type: same entity, no need to ask
                candidate.target_id = own_id
                continue

            similar = await self.search.similar_nodes(entity_text(candidate.extracted.name, candidate.extracted.summary),
                                                      candidate.vector,
                                                      self.config.dedupe_neighbors,
                                                      predicate=lambda node: node.is_entity and node.expired_at is None)
            neighbors = []
            for node_id, _ in similar:
                node = await self.store.get_node(node_id)
                if node is not None:
                    neighbors.append(_describe(node))
            if neighbors:
                dedupe_candidates.append(
                    DedupeCandidate(index=index,
                                    name=candidate.extracted.name,
                                    type=candidate.entity_type,
                                    summary=candidate.extracted.summary,
                                    similar=neighbors))

        if dedupe_candidates:
            response = await self.extraction.run(DedupeNodesRequest(candidates=dedupe_candidates, context=context))
            allowed = {item.index: {neighbor.id for neighbor in item.similar} for item in dedupe_candidates}
            for resolution in response.resolutions:
                if resolution.duplicate_of is None or resolution.index not in allowed:
                    continue
                if resolution.duplicate_of not in allowed[resolution.index]:
                    logger.warning(f'Ignoring dedupe match {resolution.duplicate_of} for candidate {resolution.index}: '
                                   f'not among its similar entities')
                    continue
                candidates[resolution.index].target_id = resolution.duplicate_of

        session_id = episodes[0].content.session_id
        entities = []
        for candidate in candidates:
            entity_id = candidate.target_id or self.identity.generate_node_id(candidate.entity_type, {
                'name': candidate.extracted.name,
                'type': candidate.entity_type
            })
            entities.append(await self._upsert_entity(entity_id, candidate, context, session_id, batch_time, result))

        return list({entity.id: entity for entity in entities}.values())

    async def _upsert_entity(self, entity_id: str, candidate: _Candidate, context: List[str], session_id: str,
                             batch_time: datetime, result: IngestionResult) -> GraphNode:
        now = utc_now()
        async with self.store.locks.acquire(entity_id):
            existing = await self.store.get_node(entity_id)
            if existing is None or existing.expired_at is not None:
                node = await self.store.add_node(
                    GraphNode(id=entity_id,
                              type=candidate.entity_type,
                              created_at=now,
                              valid_at=batch_time,
                              metadata={
                                  'sessionId': session_id,
                                  'lastUpdateTime': to_iso(now),
                                  'mentionCount': 1
                              },
                              content=EntityContent(name=candidate.extracted.name,
                                                    type=candidate.entity_type,
                                                    summary=candidate.extracted.summary),
                              embedding=candidate.vector))
                result.created_entity_ids.append(entity_id)
                logger.debug(f'Created entity {entity_id} ({candidate.extracted.name})')
            else:
                node = await self._merge_entity(existing, candidate, context, now, count_mention=bool(result.new_episode_ids))
                result.merged_entity_ids.append(entity_id)

        self.search.index_node(node)
        return node

    async def _merge_entity(self, existing: GraphNode, candidate: _Candidate, context: List[str], now: datetime,
                            count_mention: bool = True) -> GraphNode:
        """
        Fold a duplicate candidate into an existing entity; new values only fill empty fields.

        A batch that recorded no new episode leaves mentionCount and lastUpdateTime alone.
        """
        content: EntityContent = existing.content
        name = content.name or candidate.extracted.name

        alternate_names = list(content.alternate_names)
        known = {name.lower(), *(alias.lower() for alias in alternate_names)}
        if candidate.extracted.name.lower() not in known:
            alternate_names.append(candidate.extracted.name)

        summary = content.summary
        new_summary = candidate.extracted.summary
        if not summary:
            summary = new_summary
        elif new_summary and new_summary.strip().lower() != summary.strip().lower() and self.config.summarize_on_merge:
            merged = await self.extraction.run(
                SummarizeNodeRequest(name=name, previous_summary=summary, new_summary=new_summary, context=context))
            summary = merged.summary.strip() or summary

        updates = {'content': replace(content, name=name, summary=summary, alternate_names=alternate_names)}
        if count_mention:
            updates['metadata'] = {
                'lastUpdateTime': to_iso(now),
                'mentionCount': int(existing.metadata.get('mentionCount', 1)) + 1
            }
        if existing.embedding is None:
            updates['embedding'] = candidate.vector

        logger.debug(f'Merged candidate {candidate.extracted.name!r} into entity {existing.id}')
        return await self.store.update_node(existing.id, updates)

    async def _upsert_edge(self, edge: GraphEdge) -> GraphEdge:
        """
        Create the edge, or refresh the stored edge with the same id.

        The refreshed edge starts at the earlier of the two valid times.
        """
        async with self.store.locks.acquire(edge.id):
            existing = await self.store.get_edge(edge.id)
            if existing is None:
                return await self.store.add_edge(edge)
            starts = [start for start in (existing.valid_at, edge.valid_at) if start is not None]
            return await self.store.update_edge(edge.id, {
                'valid_at': min(starts) if starts else None,
                'invalid_at': existing.invalid_at or edge.invalid_at,
                'metadata': edge.metadata
            })

    async def _link_mentions(self, episodes: List[GraphNode], entities: List[GraphNode], result: IngestionResult) -> None:
        """Connect each entity to the batch episodes that mention it (all of them if none names it)."""
        now = utc_now()
        for entity in entities:
            names = [entity.content.name.lower(), *(alias.lower() for alias in entity.content.alternate_names)]
            mentioning = [episode for episode in episodes if any(name in episode.content.text.lower() for name in names)]

            for episode in mentioning or episodes:
                description = f'{episode.content.actor} mentioned {entity.content.name}'
                edge_id = self.identity.generate_edge_id(episode.id, entity.id, MENTIONS_EDGE, description)
                edge = await self._upsert_edge(
                    GraphEdge(id=edge_id,
                              type=MENTIONS_EDGE,
                              created_at=now,
                              valid_at=episode.valid_at,
                              metadata={
                                  'sessionId': episode.content.session_id,
                                  'lastUpdateTime': to_iso(now)
                              },
                              source_id=episode.id,
                              target_id=entity.id,
                              content=description))
                result.edge_ids.append(edge.id)

    def _relationship_times(self, relationship: ExtractedRelationship, batch_time: datetime):
        try:
            valid_at = to_optional_datetime(relationship.valid_at) or batch_time
        except ValueError:
            logger.warning(f'Unparseable valid_at {relationship.valid_at!r}, using batch time')
            valid_at = batch_time
        try:
            invalid_at = to_optional_datetime(relationship.invalid_at)
        except ValueError:
            logger.warning(f'Unparseable invalid_at {relationship.invalid_at!r}, ignoring it')
            invalid_at = None
        if invalid_at is not None and invalid_at < valid_at:
            logger.warning(f'invalid_at {invalid_at} precedes valid_at {valid_at}, ignoring it')
            invalid_at = None
        return valid_at, invalid_at

    async def _extract_relationships(self, batch_text: str, context: List[str], entities: List[GraphNode],
                                     batch_time: datetime, result: IngestionResult) -> None:
        response = await self.extraction.run(
            ExtractTemporalRequest(text=batch_text,
                                   context=context,
                                   entities=[_describe(entity) for entity in entities],
                                   reference_time=to_iso(batch_time)))

        for relationship in response.relationships:
            source = await self.store.get_node(relationship.source_id)
            target = await self.store.get_node(relationship.target_id)
            if source is None or target is None:
                logger.warning(f'Skipping relationship {relationship.type} with unknown endpoint '
                               f'({relationship.source_id} -> {relationship.target_id})')
                result.skipped_relationships += 1
                continue

            edge_type = normalize_relation_type(relationship.type or relationship.name)
            description = relationship.description or relationship.name or edge_type
            valid_at, invalid_at = self._relationship_times(relationship, batch_time)
            now = utc_now()
            edge = GraphEdge(id=self.identity.generate_edge_id(source.id, target.id, edge_type, description),
                             type=edge_type,
                             created_at=now,
                             valid_at=valid_at,
                             metadata={
                                 'name': relationship.name or edge_type,
                                 'lastUpdateTime': to_iso(now)
                             },
                             source_id=source.id,
                             target_id=target.id,
                             content=description,
                             invalid_at=invalid_at)

            if await self.store.get_edge(edge.id) is None and self.config.resolve_facts:
                duplicate_id = await self._resolve_facts(edge, result)
                if duplicate_id is not None:
                    result.edge_ids.append(duplicate_id)
                    continue

            stored = await self._upsert_edge(edge)
            result.edge_ids.append(stored.id)
            logger.debug(f'Stored fact {stored.id}: {stored.content}')

    async def _resolve_facts(self, edge: GraphEdge, result: IngestionResult) -> Optional[str]:
        """
        Compare a new fact with the live facts between the same entities.

        Returns:
            Id of an existing edge the new fact duplicates, or None
        """
        existing = [
            other for other in await self.store.get_edges_between([edge.source_id, edge.target_id])
            if other.type != MENTIONS_EDGE and other.invalid_at is None and other.expired_at is None and other.id != edge.id
        ]
        if not existing:
            return None

        response = await self.extraction.run(ResolveFactsRequest(new_fact=_fact(edge), existing_facts=[_fact(other) for other in existing]))
        known: Set[str] = {other.id for other in existing}

        if response.duplicate_of in known:
            async with self.store.locks.acquire(response.duplicate_of):
                await self.store.update_edge(response.duplicate_of, {'metadata': {'lastUpdateTime': edge.metadata['lastUpdateTime']}})
            logger.debug(f'Fact {edge.id} duplicates {response.duplicate_of}')
            return response.duplicate_of

        invalid_at = edge.valid_at or edge.created_at
        for edge_id in response.invalidated_ids:
            if edge_id not in known:
                logger.warning(f'Ignoring invalidation of unknown or inactive edge {edge_id}')
                continue
            async with self.store.locks.acquire(edge_id):
                await self.store.invalidate_edge(edge_id, invalid_at, reason=response.reason)
                await self.store.update_edge(edge_id, {'metadata': {'invalidatedBy': edge.id}})
            result.invalidated_edge_ids.append(edge_id)
            logger.debug(f'Fact {edge_id} invalidated by {edge.id}')
        return None

    # Stage 3

    async def _session_entity_ids(self, session_id: str) -> Set[str]:
        snapshot = await self.store.query(GraphFilter(node_types=[EPISODE_TYPE], metadata={'sessionId': session_id}))
        entity_ids: Set[str] = set()
        for episode in snapshot.nodes:
            for edge in await self.store.get_edges_for_node(episode.id, direction='out'):
                if edge.type == MENTIONS_EDGE:
                    entity_ids.add(edge.target_id)
        return entity_ids

    async def process_communities(self, episodes: List[GraphNode], result: IngestionResult) -> None:
        """Refine the communities of every session touched by the batch."""
        for session_id in sorted({episode.content.session_id for episode in episodes}):
            entity_ids = await self._session_entity_ids(session_id)
            communities = await self.communities.refine(session_id, entity_ids)
            result.community_ids.extend(node.id for node in communities)
