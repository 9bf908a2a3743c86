"""
Graph storage with temporal-aware filtered queries.
"""

from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from ..models.core import GraphEdge, GraphFilter, GraphNode, GraphSnapshot, GraphUnit
from ..utils.keyed_lock import KeyedLock
from ..utils.logging_config import get_logger
from .identity import HashRegistry

logger = get_logger(__name__)


class GraphStoreError(Exception):
    """Base exception for graph store errors."""
    pass


class NotFoundError(GraphStoreError):
    """A referenced node or edge does not exist."""
    pass


class TemporalInvariantError(GraphStoreError):
    """A unit's timestamps are inconsistent."""
    pass


class ReferencedNodeError(GraphStoreError):
    """A node cannot be deleted while edges still reference it."""
    pass


class GraphStore(ABC):
    """Keyed storage for nodes and edges.

    Every backend owns a hash registry for content-addressed ids and a per-id
    lock table that writers use to serialize read-modify-write sequences.
    """

    hash_registry: HashRegistry
    locks: KeyedLock

    @abstractmethod
    async def add_node(self, node: GraphNode) -> GraphNode:
        ...

    @abstractmethod
    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        ...

    @abstractmethod
    async def update_node(self, node_id: str, updates: Dict[str, Any]) -> GraphNode:
        ...

    @abstractmethod
    async def delete_node(self, node_id: str, cascade: bool = False) -> bool:
        ...

    @abstractmethod
    async def add_edge(self, edge: GraphEdge) -> GraphEdge:
        ...

    @abstractmethod
    async def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        ...

    @abstractmethod
    async def update_edge(self, edge_id: str, updates: Dict[str, Any]) -> GraphEdge:
        ...

    @abstractmethod
    async def delete_edge(self, edge_id: str) -> bool:
        ...

    @abstractmethod
    async def query(self, graph_filter: Optional[GraphFilter] = None) -> GraphSnapshot:
        ...

    @abstractmethod
    async def get_edges_for_node(self, node_id: str, direction: str = 'both') -> List[GraphEdge]:
        ...

    @abstractmethod
    async def get_edges_between(self, node_ids: Iterable[str]) -> List[GraphEdge]:
        ...

    @abstractmethod
    async def shortest_path_length(self, source_id: str, target_ids: Iterable[str], max_depth: int = 4) -> Optional[int]:
        ...

    @abstractmethod
    async def count_paths(self, source_id: str, target_id: str, max_length: int = 3, limit: int = 10) -> int:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    async def expire_node(self, node_id: str, at: datetime) -> GraphNode:
        """Retire a node in transaction time."""
        return await self.update_node(node_id, {'expired_at': at})

    async def invalidate_edge(self, edge_id: str, invalid_at: datetime, reason: Optional[str] = None) -> GraphEdge:
        """
        End an edge's valid time without deleting it.

        An invalidation time earlier than the edge's own valid time is moved up to it.

        Raises:
            NotFoundError: If the edge does not exist
        """
        edge = await self.get_edge(edge_id)
        if edge is None:
            raise NotFoundError(f'Edge not found: {edge_id}')
        if edge.valid_at is not None and invalid_at < edge.valid_at:
            invalid_at = edge.valid_at

        updates: Dict[str, Any] = {'invalid_at': invalid_at}
        if reason:
            updates['metadata'] = {'invalidationReason': reason}
        return await self.update_edge(edge_id, updates)


def _check_temporal(unit: GraphUnit) -> None:
    violation = unit.temporal_violation()
    if violation:
        raise TemporalInvariantError(violation)


def _apply_updates(unit: GraphUnit, updates: Dict[str, Any]) -> GraphUnit:
    """Return a copy of unit with updates merged in; metadata is merged key by key."""
    allowed = {f.name for f in fields(unit)}
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f'Unknown fields for {unit.id}: {", ".join(sorted(unknown))}')
    if 'id' in updates and updates['id'] != unit.id:
        raise ValueError(f'Cannot change the id of {unit.id}')

    changes = dict(updates)
    if 'metadata' in changes:
        changes['metadata'] = {**unit.metadata, **(changes['metadata'] or {})}
    updated = replace(unit, **changes)
    _check_temporal(updated)
    return updated


class InMemoryGraphStore(GraphStore):
    """Dictionary-backed reference store with adjacency indexes."""

    def __init__(self):
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, GraphEdge] = {}
        self._outgoing: Dict[str, Set[str]] = defaultdict(set)
        self._incoming: Dict[str, Set[str]] = defaultdict(set)
        self.hash_registry = HashRegistry()
        self.locks = KeyedLock()

    # Nodes

    async def add_node(self, node: GraphNode) -> GraphNode:
        """
        Store a node, replacing any node with the same id.

        Raises:
            TemporalInvariantError: If the node's timestamps are inconsistent
        """
        _check_temporal(node)
        self._nodes[node.id] = node
        logger.debug(f'Stored node {node.id} ({node.type})')
        return node

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    async def update_node(self, node_id: str, updates: Dict[str, Any]) -> GraphNode:
        """
        Merge field updates into an existing node.

        Args:
            node_id: Node to update
            updates: Field name to new value; ``metadata`` is merged rather than replaced

        Returns:
            The updated node

        Raises:
            NotFoundError: If the node does not exist
            TemporalInvariantError: If the result has inconsistent timestamps
        """
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFoundError(f'Node not found: {node_id}')
        updated = _apply_updates(node, updates)
        self._nodes[node_id] = updated
        return updated

    async def delete_node(self, node_id: str, cascade: bool = False) -> bool:
        """
        Delete a node.

        Args:
            node_id: Node to delete
            cascade: Also delete every edge that references the node

        Returns:
            True if a node was deleted, False if it did not exist

        Raises:
            ReferencedNodeError: If edges reference the node and cascade is False
        """
        if node_id not in self._nodes:
            return False

        edge_ids = self._outgoing.get(node_id, set()) | self._incoming.get(node_id, set())
        if edge_ids and not cascade:
            raise ReferencedNodeError(f'Node {node_id} is referenced by {len(edge_ids)} edge(s)')

        for edge_id in list(edge_ids):
            await self.delete_edge(edge_id)
        del self._nodes[node_id]
        self._outgoing.pop(node_id, None)
        self._incoming.pop(node_id, None)
        logger.debug(f'Deleted node {node_id} (cascaded {len(edge_ids)} edges)')
        return True

    # Edges

    def _require_endpoints(self, edge: GraphEdge) -> None:
        missing = [node_id for node_id in (edge.source_id, edge.target_id) if node_id not in self._nodes]
        if missing:
            raise NotFoundError(f'Edge {edge.id} references missing node(s): {", ".join(missing)}')

    def _link(self, edge: GraphEdge) -> None:
        self._outgoing[edge.source_id].add(edge.id)
        self._incoming[edge.target_id].add(edge.id)

    def _unlink(self, edge: GraphEdge) -> None:
        self._outgoing[edge.source_id].discard(edge.id)
        self._incoming[edge.target_id].discard(edge.id)

    async def add_edge(self, edge: GraphEdge) -> GraphEdge:
        """
        Store an edge between two existing nodes.

        Raises:
            NotFoundError: If either endpoint is missing; the store is left untouched
            TemporalInvariantError: If the edge's timestamps are inconsistent
        """
        self._require_endpoints(edge)
        _check_temporal(edge)

        previous = self._edges.get(edge.id)
        if previous is not None:
            self._unlink(previous)
        self._edges[edge.id] = edge
        self._link(edge)
        logger.debug(f'Stored edge {edge.id} ({edge.source_id} -[{edge.type}]-> {edge.target_id})')
        return edge

    async def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        return self._edges.get(edge_id)

    async def update_edge(self, edge_id: str, updates: Dict[str, Any]) -> GraphEdge:
        """
        Merge field updates into an existing edge.

        Raises:
            NotFoundError: If the edge, or a new endpoint, does not exist
            TemporalInvariantError: If the result has inconsistent timestamps
        """
        edge = self._edges.get(edge_id)
        if edge is None:
            raise NotFoundError(f'Edge not found: {edge_id}')
        updated = _apply_updates(edge, updates)
        self._require_endpoints(updated)

        self._unlink(edge)
        self._edges[edge_id] = updated
        self._link(updated)
        return updated

    async def delete_edge(self, edge_id: str) -> bool:
        edge = self._edges.pop(edge_id, None)
        if edge is None:
            return False
        self._unlink(edge)
        return True

    # Queries

    async def query(self, graph_filter: Optional[GraphFilter] = None) -> GraphSnapshot:
        """
        Filter nodes by type, then temporal clause, then metadata.

        Episodes are left out unless the filter names them. Edges are filtered by
        edge type and temporal clause, and kept when at least one endpoint is among
        the returned nodes.

        Args:
            graph_filter: Filter to apply (everything except episodes if None)

        Returns:
            GraphSnapshot with matching nodes and edges
        """
        graph_filter = graph_filter or GraphFilter()

        nodes = [node for node in self._nodes.values() if graph_filter.includes_type(node.type)]
        if graph_filter.temporal is not None:
            nodes = [node for node in nodes if graph_filter.temporal.matches(node)]
        if graph_filter.metadata:
            nodes = [
                node for node in nodes
                if all(node.metadata.get(key) == value for key, value in graph_filter.metadata.items())
            ]

        node_ids = {node.id for node in nodes}
        edges = [edge for edge in self._edges.values() if edge.source_id in node_ids or edge.target_id in node_ids]
        if graph_filter.edge_types:
            edges = [edge for edge in edges if edge.type in graph_filter.edge_types]
        if graph_filter.temporal is not None:
            edges = [edge for edge in edges if graph_filter.temporal.matches(edge)]

        logger.debug(f'Query matched {len(nodes)} nodes and {len(edges)} edges')
        return GraphSnapshot(nodes=nodes, edges=edges)

    async def get_edges_for_node(self, node_id: str, direction: str = 'both') -> List[GraphEdge]:
        """
        Edges touching a node.

        Args:
            node_id: Node id
            direction: 'out', 'in' or 'both'
        """
        if direction not in ('out', 'in', 'both'):
            raise ValueError(f'Invalid direction: {direction}')

        edge_ids: Set[str] = set()
        if direction in ('out', 'both'):
            edge_ids |= self._outgoing.get(node_id, set())
        if direction in ('in', 'both'):
            edge_ids |= self._incoming.get(node_id, set())
        return [self._edges[edge_id] for edge_id in sorted(edge_ids)]

    async def get_edges_between(self, node_ids: Iterable[str]) -> List[GraphEdge]:
        """Edges whose two endpoints are both in node_ids."""
        wanted = set(node_ids)
        edge_ids: Set[str] = set()
        for node_id in wanted:
            edge_ids |= self._outgoing.get(node_id, set())
        return [self._edges[edge_id] for edge_id in sorted(edge_ids) if self._edges[edge_id].target_id in wanted]

    def _neighbor_ids(self, node_id: str) -> Set[str]:
        neighbors = {self._edges[edge_id].target_id for edge_id in self._outgoing.get(node_id, set())}
        neighbors |= {self._edges[edge_id].source_id for edge_id in self._incoming.get(node_id, set())}
        neighbors.discard(node_id)
        return neighbors

    async def get_neighbors(self, node_id: str) -> List[str]:
        return sorted(self._neighbor_ids(node_id))

    async def shortest_path_length(self, source_id: str, target_ids: Iterable[str], max_depth: int = 4) -> Optional[int]:
        """Undirected hop count from source to the nearest target, or None beyond max_depth."""
        targets = set(target_ids)
        if source_id in targets:
            return 0

        visited = {source_id}
        frontier = deque([(source_id, 0)])
        while frontier:
            node_id, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for neighbor in self._neighbor_ids(node_id):
                if neighbor in targets:
                    return depth + 1
                if neighbor not in visited:
                    visited.add(neighbor)
                    frontier.append((neighbor, depth + 1))
        return None

    async def count_paths(self, source_id: str, target_id: str, max_length: int = 3, limit: int = 10) -> int:
        """Number of distinct simple undirected paths of at most max_length hops, capped at limit."""
        if source_id == target_id:
            return 0

        count = 0
        stack = [(source_id, (source_id, ))]
        while stack and count < limit:
            node_id, path = stack.pop()
            for neighbor in self._neighbor_ids(node_id):
                if neighbor == target_id:
                    count += 1
                elif neighbor not in path and len(path) < max_length:
                    stack.append((neighbor, path + (neighbor, )))
        return min(count, limit)

    def stats(self) -> Dict[str, int]:
        return {'nodes': len(self._nodes), 'edges': len(self._edges), 'issued_ids': len(self.hash_registry)}

    async def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._outgoing.clear()
        self._incoming.clear()
        self.hash_registry.clear()
        logger.info('Cleared in-memory graph store')
