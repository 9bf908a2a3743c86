"""
Content-addressed identifiers for graph nodes and edges.
"""

import hashlib
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..models.core import EPISODE_TYPE, EntityContent, EpisodeContent, is_entity_type, normalize_entity_type
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_HASH_LENGTH = 32


class HashRegistry:
    """Issued ids, each mapped to the normalized content it was issued for.

    The registry belongs to a graph store, so every generator working against
    the same store sees the same collision history.
    """

    def __init__(self):
        self._owners: Dict[str, str] = {}

    def owner(self, issued_id: str) -> Optional[str]:
        return self._owners.get(issued_id)

    def claim(self, issued_id: str, normalized: str) -> None:
        self._owners[issued_id] = normalized

    def clear(self) -> None:
        self._owners.clear()

    def __contains__(self, issued_id: str) -> bool:
        return issued_id in self._owners

    def __len__(self) -> int:
        return len(self._owners)


def normalize_value(value: Any) -> str:
    """Canonical string form of a value for hashing.

    Strings are trimmed and lower-cased, mappings are rendered as
    ``key:value|key:value`` with sorted keys, sequences are normalized
    element-wise.
    """
    if value is None:
        return ''
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return '|'.join(f'{key}:{normalize_value(value[key])}' for key in sorted(value))
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return ','.join(normalize_value(item) for item in items)
    return str(value).strip().lower()


def content_hash(text: str, length: int = DEFAULT_HASH_LENGTH) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()[:length]


class IdentityGenerator:
    """Derive deterministic ids from normalized content."""

    def __init__(self, registry: Optional[HashRegistry] = None, hash_length: int = DEFAULT_HASH_LENGTH):
        """
        Args:
            registry: Collision registry to record issued ids in (a private one if None)
            hash_length: Number of hex digits kept from the digest
        """
        self.registry = registry if registry is not None else HashRegistry()
        self.hash_length = hash_length

    def _issue(self, prefix: str, normalized: str) -> str:
        digest = content_hash(normalized, self.hash_length)
        candidate = f'{prefix}_{digest}'
        counter = 0

        while True:
            owner = self.registry.owner(candidate)
            if owner is None:
                self.registry.claim(candidate, normalized)
                return candidate
            if owner == normalized:
                return candidate

            counter += 1
            logger.warning(f'Identity collision on {candidate}, rehashing with counter {counter}')
            candidate = f'{prefix}_{content_hash(f"{digest}_{counter}", self.hash_length)}'

    def generate_node_id(self, node_type: str, content: Any) -> str:
        """
        Generate the id of a node.

        Args:
            node_type: Node type tag ('episode', 'entity.<subtype>', 'community', ...)
            content: Typed content object or an equivalent mapping

        Returns:
            ``ep_<session>_<turn>`` for episodes, ``<subtype>_<hash>`` for entities,
            ``<type>_<hash>`` for anything else
        """
        if node_type == EPISODE_TYPE:
            if isinstance(content, EpisodeContent):
                session_id, turn_id = content.session_id, content.turn_id
            else:
                session_id = content.get('sessionId', content.get('session_id'))
                turn_id = content.get('turnId', content.get('turn_id'))
            return f'ep_{session_id}_{turn_id}'

        if is_entity_type(node_type):
            if isinstance(content, EntityContent):
                name, raw_type = content.name, content.type
            else:
                name, raw_type = content.get('name'), content.get('type')
            entity_type = normalize_entity_type(raw_type or node_type)
            normalized = normalize_value({'name': name, 'type': entity_type})
            return self._issue(entity_type.split('.', 1)[1], normalized)

        if hasattr(content, '__dataclass_fields__'):
            content = {name: getattr(content, name) for name in content.__dataclass_fields__}
        return self._issue(node_type.replace('.', '_'), normalize_value(content))

    def generate_edge_id(self, source_id: str, target_id: str, edge_type: str, content: str = '') -> str:
        """Generate ``rel_<hash>`` over (source, target, type, content)."""
        normalized = normalize_value({'content': content, 'source': source_id, 'target': target_id, 'type': edge_type})
        return self._issue('rel', normalized)
