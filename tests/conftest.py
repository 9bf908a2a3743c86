"""Shared fixtures for the temporal graph memory tests."""
import hashlib
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from temporal_memory.services.embedding import EmbeddingCapability
from temporal_memory.services.extraction import ExtractionCapability, ExtractionClient
from temporal_memory.services.graph_store import InMemoryGraphStore
from temporal_memory.utils.config import IngestionConfig, RerankerConfig, SearchConfig, load_config

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

_WORD = re.compile(r'\w+')


def words(text):
    return _WORD.findall((text or '').lower())


def at(days=0, hours=0):
    """BASE_TIME shifted by the given offset."""
    return BASE_TIME + timedelta(days=days, hours=hours)


def message(turn, body, session='s1', role='user', when=None):
    return {'id': turn, 'body': body, 'role': role, 'timestamp': when or BASE_TIME, 'sessionId': session}


class FakeExtraction(ExtractionCapability):
    """Scripted extraction capability.

    Entities are found by keyword, duplicates by name equality, relationships
    are given by entity name and resolved against the payload's entity list.
    """

    def __init__(self, entities=None):
        self.entities = dict(entities or {})
        self.relationships = []
        self.resolve_mode = None
        self.fail_on = set()
        self.calls = []

    def calls_for(self, task):
        return [payload for called, payload in self.calls if called == task]

    async def process(self, task, payload):
        self.calls.append((task, payload))
        if task in self.fail_on:
            raise RuntimeError(f'{task.value} unavailable')
        return getattr(self, f'_{task.value.lower()}')(payload)

    def _extract_entities(self, payload):
        text = payload['text'].lower()
        return {'entities': [dict(entity) for keyword, entity in self.entities.items() if keyword in text]}

    def _dedupe_nodes(self, payload):
        resolutions = []
        for candidate in payload['candidates']:
            match = next((similar['id'] for similar in candidate['similar']
                          if similar['name'].lower() == candidate['name'].lower()), None)
            resolutions.append({'index': candidate['index'], 'duplicate_of': match})
        return {'resolutions': resolutions}

    def _extract_temporal(self, payload):
        ids = {entity['name'].lower(): entity['id'] for entity in payload['entities']}
        relationships = []
        for relation in self.relationships:
            relationships.append({
                'sourceId': ids.get(relation['source'].lower(), f'missing_{relation["source"]}'),
                'targetId': ids.get(relation['target'].lower(), f'missing_{relation["target"]}'),
                'type': relation['type'],
                'name': relation.get('name', relation['type']),
                'description': relation.get('description', ''),
                'validAt': relation.get('valid_at'),
                'invalidAt': relation.get('invalid_at'),
            })
        return {'relationships': relationships}

    def _resolve_facts(self, payload):
        existing = [fact['id'] for fact in payload['existing_facts']]
        if self.resolve_mode == 'invalidate':
            return {'invalidated_ids': existing, 'reason': 'superseded'}
        if self.resolve_mode == 'duplicate' and existing:
            return {'invalidated_ids': [], 'duplicate_of': existing[0]}
        return {'invalidated_ids': []}

    def _summarize_node(self, payload):
        return {'summary': f'{payload["previous_summary"]} {payload["new_summary"]}', 'key_points': []}

    def _refine_communities(self, payload):
        members = [entity['id'] for entity in payload['entities']]
        seeds = payload['seed_clusters']
        names = ', '.join(entity['name'] for entity in payload['entities'])
        return {'communities': [{'id': seeds[0]['id'] if seeds else None, 'summary': f'Group of {names}', 'member_ids': members}]}

    def _evaluate_search(self, payload):
        query = set(words(payload['query']))
        text = set(words(payload['text']))
        return {'relevance': len(query & text) / len(query) if query else 0.0}


class HashingEmbedder(EmbeddingCapability):
    """Deterministic hashed bag-of-words embeddings."""

    def __init__(self, dimension=256):
        self.dimension = dimension
        self.batches = []

    def vector(self, text):
        vector = [0.0] * self.dimension
        for token in words(text):
            vector[int(hashlib.md5(token.encode('utf-8')).hexdigest(), 16) % self.dimension] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def generate_embeddings(self, texts):
        if isinstance(texts, str):
            texts = [texts]
        self.batches.append(list(texts))
        return [self.vector(text) for text in texts]


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest.fixture
def fake_extraction():
    return FakeExtraction({
        'order #123': {'name': 'order #123', 'type': 'order', 'summary': 'A customer order'},
        'alps': {'name': 'Alps', 'type': 'place', 'summary': 'Mountain range in Europe'},
        'alice': {'name': 'Alice', 'type': 'person', 'summary': 'An engineer'},
        'acme': {'name': 'Acme', 'type': 'company', 'summary': 'A manufacturer'},
    })


@pytest.fixture
def extraction_client(fake_extraction):
    return ExtractionClient(fake_extraction)


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def app_config():
    """Default configuration, independent of the environment."""
    return replace(load_config(),
                   search=SearchConfig(),
                   reranker=RerankerConfig(),
                   ingestion=IngestionConfig())
