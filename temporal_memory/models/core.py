"""
Core data models for the temporal knowledge graph.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..utils.timestamp_utils import to_datetime, to_optional_datetime

EPISODE_TYPE = 'episode'
COMMUNITY_TYPE = 'community'
ENTITY_PREFIX = 'entity'
MENTIONS_EDGE = 'MENTIONS'


class EntityType(str, Enum):
    """Closed set of entity subtypes."""
    PERSON = 'entity.person'
    ORGANIZATION = 'entity.organization'
    LOCATION = 'entity.location'
    OBJECT = 'entity.object'
    CONCEPT = 'entity.concept'
    EVENT = 'entity.event'


# Free-form labels an extractor may produce, mapped onto the subtypes above
ENTITY_TYPE_ALIASES = {
    'people': 'person',
    'user': 'person',
    'place': 'location',
    'venue': 'location',
    'address': 'location',
    'company': 'organization',
    'institution': 'organization',
    'group': 'organization',
    'org': 'organization',
    'item': 'object',
    'product': 'object',
    'thing': 'object',
    'order': 'object',
    'idea': 'concept',
    'topic': 'concept',
    'subject': 'concept',
    'activity': 'event',
    'meeting': 'event',
    'occasion': 'event',
}


def is_entity_type(node_type: str) -> bool:
    return node_type == ENTITY_PREFIX or node_type.startswith(f'{ENTITY_PREFIX}.')


def normalize_entity_type(raw: Optional[str]) -> str:
    """Map a free-form type label onto an ``entity.<subtype>`` tag.

    Unknown or missing labels fall back to ``entity.concept``.
    """
    label = (raw or '').strip().lower()
    if label.startswith(f'{ENTITY_PREFIX}.'):
        label = label[len(ENTITY_PREFIX) + 1:]
    label = ENTITY_TYPE_ALIASES.get(label, label)
    candidate = f'{ENTITY_PREFIX}.{label}'
    if candidate in {member.value for member in EntityType}:
        return candidate
    return EntityType.CONCEPT.value


def type_matches(node_type: str, allowed: Iterable[str]) -> bool:
    """True if node_type equals an allowed tag or sits under it (``entity`` matches ``entity.person``)."""
    for tag in allowed:
        if node_type == tag or node_type.startswith(f'{tag}.'):
            return True
    return False


@dataclass
class EpisodeContent:
    """One conversational turn, as recorded."""
    actor: str
    text: str
    session_id: str
    turn_id: str
    timestamp: datetime


@dataclass
class EntityContent:
    """A deduplicated real-world referent."""
    name: str
    type: str
    summary: str = ''
    alternate_names: List[str] = field(default_factory=list)


@dataclass
class CommunityContent:
    """A cluster of related entities."""
    summary: str = ''
    member_ids: List[str] = field(default_factory=list)
    divergence_score: float = 0.0


@dataclass
class GraphUnit:
    """Fields shared by nodes and edges.

    ``created_at`` is transaction time (when the fact was recorded), ``valid_at``
    is valid time (when it became true) and ``expired_at`` marks when the unit
    was retired from the graph.
    """
    id: str
    type: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    valid_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @property
    def validity_end(self) -> Optional[datetime]:
        return self.expired_at

    def is_visible_at(self, timestamp: datetime) -> bool:
        """Whether the unit is part of the graph as of the given time."""
        if self.created_at > timestamp:
            return False
        if self.expired_at is not None and self.expired_at <= timestamp:
            return False
        if self.valid_at is not None and self.valid_at > timestamp:
            return False
        return True

    def temporal_violation(self) -> Optional[str]:
        """Describe the first broken temporal invariant, or None."""
        if self.expired_at is not None and self.expired_at <= self.created_at:
            return f'{self.id}: expired_at must be after created_at'
        if self.valid_at is not None and self.expired_at is not None and self.valid_at > self.expired_at:
            return f'{self.id}: valid_at must not be after expired_at'
        return None


@dataclass
class GraphNode(GraphUnit):
    """A node; ``content`` is EpisodeContent, EntityContent or CommunityContent depending on type."""
    content: Any = None
    embedding: Optional[List[float]] = None

    @property
    def is_episode(self) -> bool:
        return self.type == EPISODE_TYPE

    @property
    def is_entity(self) -> bool:
        return is_entity_type(self.type)

    @property
    def is_community(self) -> bool:
        return self.type == COMMUNITY_TYPE


@dataclass
class GraphEdge(GraphUnit):
    """A directed fact between two nodes. ``invalid_at`` ends its valid time."""
    source_id: str = ''
    target_id: str = ''
    content: str = ''
    invalid_at: Optional[datetime] = None

    @property
    def validity_end(self) -> Optional[datetime]:
        ends = [end for end in (self.expired_at, self.invalid_at) if end is not None]
        return min(ends) if ends else None

    def is_visible_at(self, timestamp: datetime) -> bool:
        if self.invalid_at is not None and self.invalid_at <= timestamp:
            return False
        return super().is_visible_at(timestamp)

    def temporal_violation(self) -> Optional[str]:
        if self.valid_at is not None and self.invalid_at is not None and self.valid_at > self.invalid_at:
            return f'{self.id}: valid_at must not be after invalid_at'
        return super().temporal_violation()


@dataclass
class Message:
    """An incoming conversational turn to ingest."""
    id: str
    body: str
    role: str
    timestamp: datetime
    session_id: str

    def __post_init__(self):
        self.timestamp = to_datetime(self.timestamp)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Message':
        """Build a message from a dict using either camelCase or snake_case keys."""
        session_id = data.get('sessionId', data.get('session_id'))
        if data.get('id') is None or session_id is None:
            raise ValueError('message requires both an id and a sessionId')
        return cls(id=str(data['id']),
                   body=str(data.get('body', data.get('content', '')) or ''),
                   role=str(data.get('role', 'user')),
                   timestamp=data.get('timestamp'),
                   session_id=str(session_id))


@dataclass
class TemporalFilter:
    """Point-in-time (``valid_at``) or range (``valid_after``/``valid_before``) clause."""
    valid_at: Optional[datetime] = None
    valid_after: Optional[datetime] = None
    valid_before: Optional[datetime] = None

    def __post_init__(self):
        self.valid_at = to_optional_datetime(self.valid_at)
        self.valid_after = to_optional_datetime(self.valid_after)
        self.valid_before = to_optional_datetime(self.valid_before)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional['TemporalFilter']:
        if not data:
            return None
        return cls(valid_at=data.get('validAt', data.get('valid_at')),
                   valid_after=data.get('validAfter', data.get('valid_after')),
                   valid_before=data.get('validBefore', data.get('valid_before')))

    def matches(self, unit: GraphUnit) -> bool:
        if self.valid_at is not None and not unit.is_visible_at(self.valid_at):
            return False

        if self.valid_after is None and self.valid_before is None:
            return True

        # Validity interval [start, end) must overlap [valid_after, valid_before]
        start = unit.valid_at or unit.created_at
        end = unit.validity_end
        if self.valid_before is not None and start > self.valid_before:
            return False
        if self.valid_after is not None and end is not None and end <= self.valid_after:
            return False
        return True


@dataclass
class GraphFilter:
    """Store query filter, applied as type, then temporal, then metadata."""
    node_types: Optional[List[str]] = None
    edge_types: Optional[List[str]] = None
    temporal: Optional[TemporalFilter] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'GraphFilter':
        data = data or {}
        node_types = data.get('nodeTypes', data.get('node_types'))
        edge_types = data.get('edgeTypes', data.get('edge_types'))
        temporal = data.get('temporal')
        if not isinstance(temporal, TemporalFilter):
            temporal = TemporalFilter.from_dict(temporal)
        return cls(node_types=list(node_types) if node_types else None,
                   edge_types=list(edge_types) if edge_types else None,
                   temporal=temporal,
                   metadata=dict(data.get('metadata') or {}))

    def includes_type(self, node_type: str) -> bool:
        # Episodes live on their own query surface unless asked for explicitly
        if self.node_types is None:
            return node_type != EPISODE_TYPE
        return type_matches(node_type, self.node_types)


@dataclass
class GraphSnapshot:
    """Result of a store query."""
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)


@dataclass
class SearchFilters:
    """Optional restrictions on search results."""
    role: Optional[str] = None
    time_range: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None
    node_types: Optional[List[str]] = None

    def __post_init__(self):
        if self.time_range:
            start, end = self.time_range
            self.time_range = (to_optional_datetime(start), to_optional_datetime(end))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'SearchFilters':
        data = data or {}
        time_range = data.get('timeRange', data.get('time_range'))
        if time_range:
            if isinstance(time_range, Mapping):
                start, end = time_range.get('start'), time_range.get('end')
            else:
                start, end = time_range
            time_range = (start, end)
        node_types = data.get('nodeTypes', data.get('node_types'))
        return cls(role=data.get('role'),
                   time_range=time_range or None,
                   node_types=list(node_types) if node_types else None)


@dataclass
class SearchOptions:
    """Options for GraphManager.search."""
    timestamp: Optional[datetime] = None
    limit: Optional[int] = None
    filters: SearchFilters = field(default_factory=SearchFilters)
    center_node_id: Optional[str] = None
    query_node_ids: Optional[List[str]] = None

    def __post_init__(self):
        self.timestamp = to_optional_datetime(self.timestamp)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'SearchOptions':
        data = data or {}
        filters = data.get('filters')
        if not isinstance(filters, SearchFilters):
            filters = SearchFilters.from_dict(filters)
        return cls(timestamp=data.get('timestamp'),
                   limit=data.get('limit'),
                   filters=filters,
                   center_node_id=data.get('centerNodeId', data.get('center_node_id')),
                   query_node_ids=data.get('queryNodeIds', data.get('query_node_ids')))


@dataclass
class SearchResult:
    """A resolved search hit."""
    node: GraphNode
    score: float
    confidence: float
    features: Dict[str, float] = field(default_factory=dict)


def node_text(node: GraphNode) -> str:
    """Searchable text of a node."""
    content = node.content
    if isinstance(content, EntityContent):
        parts = [content.name, *content.alternate_names, content.summary]
    elif isinstance(content, EpisodeContent):
        parts = [content.actor, content.text]
    elif isinstance(content, CommunityContent):
        parts = [content.summary]
    elif isinstance(content, Mapping):
        parts = [value for value in content.values() if isinstance(value, str)]
    else:
        parts = [str(content or '')]
    return ' '.join(part for part in parts if part)
