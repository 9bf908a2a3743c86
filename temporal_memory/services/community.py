"""
Community detection: label-propagation seeding and capability-driven refinement.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..models.core import COMMUNITY_TYPE, CommunityContent, GraphFilter, GraphNode
from ..models.tasks import CommunityCluster, EntityDescriptor, FactDescriptor, RefineCommunitiesRequest
from ..utils.config import IngestionConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now
from .embedding import EmbeddingCapability, embed_texts
from .extraction import ExtractionClient
from .graph_store import GraphStore
from .hybrid_search import HybridSearch
from .identity import IdentityGenerator

logger = get_logger(__name__)

Adjacency = Dict[str, Set[str]]


def build_adjacency(node_ids: Iterable[str], links: Iterable[Tuple[str, str]]) -> Adjacency:
    """Undirected adjacency restricted to node_ids; self-links are ignored."""
    adjacency: Adjacency = {node_id: set() for node_id in node_ids}
    for source, target in links:
        if source != target and source in adjacency and target in adjacency:
            adjacency[source].add(target)
            adjacency[target].add(source)
    return adjacency


def label_propagation(adjacency: Adjacency, max_iterations: int = 10) -> Dict[str, str]:
    """
    Deterministic asynchronous label propagation.

    Nodes start with their own id as label, are visited in sorted order and adopt
    the most frequent label among their neighbours; ties go to the smallest label.

    Args:
        adjacency: Undirected adjacency
        max_iterations: Upper bound on full passes

    Returns:
        node_id to community label
    """
    labels = {node_id: node_id for node_id in adjacency}

    for iteration in range(max_iterations):
        changed = False
        for node_id in sorted(adjacency):
            neighbors = adjacency[node_id]
            if not neighbors:
                continue
            counts = Counter(labels[neighbor] for neighbor in neighbors)
            best = max(counts.values())
            label = min(candidate for candidate, count in counts.items() if count == best)
            if label != labels[node_id]:
                labels[node_id] = label
                changed = True
        if not changed:
            logger.debug(f'Label propagation converged after {iteration + 1} passes')
            break

    return labels


def divergence_score(member_ids: Iterable[str], adjacency: Adjacency) -> float:
    """Mean share of each member's neighbours lying outside the community (members without neighbours skipped)."""
    members = set(member_ids)
    shares = []
    for member in members:
        neighbors = adjacency.get(member, set())
        if neighbors:
            shares.append(len(neighbors - members) / len(neighbors))
    return sum(shares) / len(shares) if shares else 0.0


@dataclass
class _PlannedCommunity:
    id: str
    summary: str
    member_ids: List[str]
    divergence: float


class CommunityBuilder:
    """Recomputes the communities of one scope, replacing the previous membership wholesale."""

    def __init__(self,
                 store: GraphStore,
                 identity: IdentityGenerator,
                 search: HybridSearch,
                 extraction: ExtractionClient,
                 embedder: EmbeddingCapability,
                 config: Optional[IngestionConfig] = None):
        self.store = store
        self.identity = identity
        self.search = search
        self.extraction = extraction
        self.embedder = embedder
        self.config = config or IngestionConfig()

    def community_id(self, scope: str, label: str) -> str:
        return self.identity.generate_node_id(COMMUNITY_TYPE, {'scope': scope, 'label': label})

    async def _current_communities(self, scope: str) -> Dict[str, GraphNode]:
        snapshot = await self.store.query(GraphFilter(node_types=[COMMUNITY_TYPE], metadata={'scope': scope}))
        return {node.id: node for node in snapshot.nodes if node.expired_at is None}

    async def refine(self, scope: str, entity_ids: Iterable[str]) -> List[GraphNode]:
        """
        Cluster the given entities and store the resulting communities.

        Args:
            scope: Scope key (a session id); communities of other scopes are untouched
            entity_ids: Entities in scope

        Returns:
            Community nodes now current for the scope

        Raises:
            ExtractionError: If the refinement task fails
            EmbeddingError: If summary embedding fails
        """
        entities = []
        for entity_id in sorted(set(entity_ids)):
            node = await self.store.get_node(entity_id)
            if node is not None and node.is_entity and node.expired_at is None:
                entities.append(node)
        if not entities:
            logger.debug(f'No entities in scope {scope}, skipping community refinement')
            return []

        ids = [node.id for node in entities]
        relations = [
            edge for edge in await self.store.get_edges_between(ids)
            if edge.invalid_at is None and edge.expired_at is None and edge.source_id != edge.target_id
        ]
        adjacency = build_adjacency(ids, ((edge.source_id, edge.target_id) for edge in relations))
        labels = label_propagation(adjacency, self.config.label_propagation_iterations)

        groups: Dict[str, List[str]] = defaultdict(list)
        for node_id, label in labels.items():
            groups[label].append(node_id)
        seeds = [CommunityCluster(id=self.community_id(scope, label), member_ids=sorted(members))
                 for label, members in sorted(groups.items())]

        request = RefineCommunitiesRequest(
            scope=scope,
            entities=[EntityDescriptor(id=node.id, name=node.content.name, type=node.type, summary=node.content.summary)
                      for node in entities],
            relations=[FactDescriptor(id=edge.id, source_id=edge.source_id, target_id=edge.target_id, type=edge.type,
                                      description=edge.content) for edge in relations],
            seed_clusters=seeds)
        response = await self.extraction.run(request)

        previous = await self._current_communities(scope)
        known_ids = {seed.id for seed in seeds} | set(previous)
        names = {node.id: node.content.name for node in entities}
        planned = self._plan(scope, response.communities, known_ids, adjacency, names)

        vectors = await embed_texts(self.embedder, [plan.summary for plan in planned])
        now = utc_now()
        current = []
        for plan, vector in zip(planned, vectors):
            current.append(await self._store_community(scope, plan, vector, now))

        refreshed = {node.id for node in current}
        for old_id, old in previous.items():
            if old_id in refreshed:
                continue
            # expired_at has to stay strictly after created_at
            expired_at = max(now, old.created_at + timedelta(microseconds=1))
            await self.store.expire_node(old_id, expired_at)
            self.search.remove_node(old_id)
            logger.debug(f'Retired community {old_id} of scope {scope}')

        logger.info(f'Scope {scope}: {len(current)} communities over {len(entities)} entities')
        return current

    def _plan(self, scope: str, clusters: List[CommunityCluster], known_ids: Set[str], adjacency: Adjacency,
              names: Dict[str, str]) -> List[_PlannedCommunity]:
        assigned: Set[str] = set()
        used_ids: Set[str] = set()
        planned = []

        for cluster in clusters:
            members = [member for member in dict.fromkeys(cluster.member_ids) if member in adjacency and member not in assigned]
            if len(members) < self.config.community_min_size:
                logger.debug(f'Dropping community with {len(members)} valid members in scope {scope}')
                continue
            members = sorted(members)[:self.config.community_max_size]

            community_id = cluster.id if cluster.id in known_ids and cluster.id not in used_ids else None
            if community_id is None:
                community_id = self.community_id(scope, members[0])
            if community_id in used_ids:
                logger.warning(f'Community {community_id} returned twice for scope {scope}, keeping the first')
                continue

            assigned.update(members)
            used_ids.add(community_id)
            summary = cluster.summary.strip() or ', '.join(names[member] for member in members)
            planned.append(_PlannedCommunity(community_id, summary, members, divergence_score(members, adjacency)))

        return planned

    async def _store_community(self, scope: str, plan: _PlannedCommunity, vector: List[float], now) -> GraphNode:
        content = CommunityContent(summary=plan.summary, member_ids=plan.member_ids, divergence_score=plan.divergence)
        metadata = {'scope': scope, 'lastUpdateTime': to_iso(now), 'memberCount': len(plan.member_ids)}

        async with self.store.locks.acquire(plan.id):
            existing = await self.store.get_node(plan.id)
            if existing is not None and existing.expired_at is None:
                node = await self.store.update_node(plan.id, {'content': content, 'embedding': vector, 'metadata': metadata})
            else:
                node = await self.store.add_node(
                    GraphNode(id=plan.id,
                              type=COMMUNITY_TYPE,
                              created_at=now,
                              valid_at=now,
                              metadata=metadata,
                              content=content,
                              embedding=vector))

        self.search.index_node(node)
        return node
