"""Tests for the three-layer ingestion pipeline."""
import pytest

from temporal_memory.models.core import COMMUNITY_TYPE, EPISODE_TYPE, MENTIONS_EDGE, GraphFilter, Message, TemporalFilter
from temporal_memory.models.tasks import ExtractionTask
from temporal_memory.services.extraction import ExtractionError
from temporal_memory.services.graph_manager import GraphManager
from temporal_memory.services.ingestion import entity_text, normalize_relation_type
from temporal_memory.utils.timestamp_utils import to_datetime, utc_now

from conftest import at, message


def batch(*messages):
    return [Message.from_dict(item) for item in messages]


@pytest.fixture
def manager(fake_extraction, embedder, app_config):
    return GraphManager(fake_extraction, embedder, config=app_config)


async def entity_named(manager, name):
    snapshot = await manager.store.query(GraphFilter(node_types=['entity']))
    matches = [node for node in snapshot.nodes if node.content.name == name]
    assert len(matches) == 1, f'expected one entity named {name}'
    return matches[0]


async def facts_between(manager, *node_ids):
    return [edge for edge in await manager.store.get_edges_between(node_ids) if edge.type != MENTIONS_EDGE]


class TestHelpers:
    """Normalization helpers."""

    def test_relation_type(self):
        assert normalize_relation_type('works at') == 'WORKS_AT'
        assert normalize_relation_type('Reports-To') == 'REPORTS_TO'
        assert normalize_relation_type('  ') == 'RELATES_TO'
        assert normalize_relation_type(None) == 'RELATES_TO'

    def test_entity_text(self):
        assert entity_text('Alice', 'An engineer') == 'Alice: An engineer'
        assert entity_text('Alice') == 'Alice'


class TestEpisodicLayer:
    """Layer 1."""

    @pytest.mark.asyncio
    async def test_invalid_layer(self, manager):
        with pytest.raises(ValueError):
            await manager.pipeline.ingest(batch(message('t1', 'hello')), processing_layer=4)

    @pytest.mark.asyncio
    async def test_empty_batch(self, manager, fake_extraction):
        result = await manager.pipeline.ingest([], processing_layer=3)
        assert result.episode_ids == []
        assert fake_extraction.calls == []

    @pytest.mark.asyncio
    async def test_episodes_only(self, manager, fake_extraction):
        result = await manager.pipeline.ingest(batch(message('t1', 'My order #123 was late', role='user')), processing_layer=1)

        assert result.episode_ids == ['ep_s1_t1']
        assert result.entity_ids == []
        assert fake_extraction.calls == []

        episode = await manager.store.get_node('ep_s1_t1')
        assert episode.type == EPISODE_TYPE
        assert episode.valid_at == at(0)
        assert episode.metadata == {'role': 'user', 'sessionId': 's1', 'turnId': 't1'}
        assert episode.embedding is None
        assert (await manager.store.query()).nodes == []
        assert 'ep_s1_t1' in manager.search_index.lexical

    @pytest.mark.asyncio
    async def test_episodes_are_not_duplicated(self, manager):
        turn = message('t1', 'hello there')
        await manager.pipeline.ingest(batch(turn), processing_layer=1)
        await manager.pipeline.ingest(batch(turn), processing_layer=1)

        snapshot = await manager.store.query(GraphFilter(node_types=[EPISODE_TYPE]))
        assert [node.id for node in snapshot.nodes] == ['ep_s1_t1']


class TestSemanticLayer:
    """Layer 2: entities, mentions and facts."""

    @pytest.mark.asyncio
    async def test_one_entity_mentioned_twice(self, manager):
        turns = batch(message('t1', 'My order #123 was late', role='user'),
                      message('t2', 'Sorry, refunding order #123', role='assistant'))
        result = await manager.pipeline.ingest(turns, processing_layer=2)

        order = await entity_named(manager, 'order #123')
        assert order.type == 'entity.object'
        assert order.id.startswith('object_')
        assert order.embedding is not None
        assert order.valid_at == at(0)
        assert order.metadata['mentionCount'] == 1
        assert result.created_entity_ids == [order.id]

        mentions = await manager.store.get_edges_for_node(order.id, direction='in')
        assert sorted(edge.source_id for edge in mentions) == ['ep_s1_t1', 'ep_s1_t2']
        assert all(edge.type == MENTIONS_EDGE for edge in mentions)
        assert sorted(edge.content for edge in mentions) == ['assistant mentioned order #123', 'user mentioned order #123']

    @pytest.mark.asyncio
    async def test_reingesting_merges(self, manager):
        turns = batch(message('t1', 'My order #123 was late'), message('t2', 'Sorry, refunding order #123', role='assistant'))
        await manager.pipeline.ingest(turns, processing_layer=2)
        first_edges = sorted(edge.id for edge in (await manager.store.query()).edges)

        counted = dict((await entity_named(manager, 'order #123')).metadata)
        result = await manager.pipeline.ingest(turns, processing_layer=2)
        order = await entity_named(manager, 'order #123')

        assert result.created_entity_ids == []
        assert result.merged_entity_ids == [order.id]
        assert result.new_episode_ids == []
        assert order.metadata['mentionCount'] == 1
        assert order.metadata['lastUpdateTime'] == counted['lastUpdateTime']
        assert sorted(edge.id for edge in (await manager.store.query()).edges) == first_edges
        assert len(await manager.store.get_edges_for_node(order.id)) == 2

    @pytest.mark.asyncio
    async def test_new_turn_counts_another_mention(self, manager):
        await manager.pipeline.ingest(batch(message('t1', 'My order #123 was late')), processing_layer=2)
        result = await manager.pipeline.ingest(batch(message('t2', 'Where is order #123?', when=at(1))), processing_layer=2)

        assert result.new_episode_ids == ['ep_s1_t2']
        assert (await entity_named(manager, 'order #123')).metadata['mentionCount'] == 2

    @pytest.mark.asyncio
    async def test_restated_fact_with_earlier_window(self, manager, fake_extraction):
        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Acme', 'type': 'works at', 'description': 'Alice works at Acme'}]
        await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme', when=at(400))), processing_layer=2)

        fake_extraction.relationships = [{
            'source': 'Alice',
            'target': 'Acme',
            'type': 'works at',
            'description': 'Alice works at Acme',
            'valid_at': '2023-01-01T00:00:00Z',
            'invalid_at': '2024-06-01T00:00:00Z'
        }]
        result = await manager.pipeline.ingest(batch(message('t2', 'Alice worked at Acme until June', when=at(401))), processing_layer=2)

        alice = await entity_named(manager, 'Alice')
        acme = await entity_named(manager, 'Acme')
        facts = await facts_between(manager, alice.id, acme.id)

        assert len(facts) == 1
        assert facts[0].id in result.edge_ids
        assert facts[0].valid_at == to_datetime('2023-01-01T00:00:00Z')
        assert facts[0].invalid_at == to_datetime('2024-06-01T00:00:00Z')

    @pytest.mark.asyncio
    async def test_fact_with_valid_time(self, manager, fake_extraction):
        fake_extraction.relationships = [{
            'source': 'Alice',
            'target': 'Acme',
            'type': 'works at',
            'description': 'Alice works at Acme',
            'valid_at': '2023-06-01T00:00:00Z'
        }]
        result = await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme')), processing_layer=2)

        alice = await entity_named(manager, 'Alice')
        acme = await entity_named(manager, 'Acme')
        facts = await facts_between(manager, alice.id, acme.id)

        assert len(facts) == 1
        assert facts[0].type == 'WORKS_AT'
        assert facts[0].source_id == alice.id
        assert facts[0].valid_at == to_datetime('2023-06-01T00:00:00Z')
        assert facts[0].invalid_at is None
        assert facts[0].id in result.edge_ids

        request = fake_extraction.calls_for(ExtractionTask.EXTRACT_TEMPORAL)[0]
        assert {entity['id'] for entity in request['entities']} == {alice.id, acme.id}

    @pytest.mark.asyncio
    async def test_relationship_with_unknown_endpoint_is_skipped(self, manager, fake_extraction):
        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Nobody', 'type': 'knows'}]
        result = await manager.pipeline.ingest(batch(message('t1', 'Alice met somebody')), processing_layer=2)

        assert result.skipped_relationships == 1
        alice = await entity_named(manager, 'Alice')
        assert [edge.type for edge in await manager.store.get_edges_for_node(alice.id)] == [MENTIONS_EDGE]

    @pytest.mark.asyncio
    async def test_contradicting_fact_invalidates_old_one(self, manager, fake_extraction):
        fake_extraction.resolve_mode = 'invalidate'
        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Acme', 'type': 'works at', 'description': 'Alice works at Acme'}]
        await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme', when=at(0))), processing_layer=2)

        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Acme', 'type': 'left', 'description': 'Alice left Acme'}]
        result = await manager.pipeline.ingest(batch(message('t2', 'Alice left Acme', when=at(1))), processing_layer=2)

        alice = await entity_named(manager, 'Alice')
        acme = await entity_named(manager, 'Acme')
        facts = {edge.type: edge for edge in await facts_between(manager, alice.id, acme.id)}
        old, new = facts['WORKS_AT'], facts['LEFT']

        assert result.invalidated_edge_ids == [old.id]
        assert old.invalid_at == at(1)
        assert old.metadata['invalidationReason'] == 'superseded'
        assert old.metadata['invalidatedBy'] == new.id
        assert new.invalid_at is None

        visible = await manager.store.query(GraphFilter(edge_types=['WORKS_AT', 'LEFT'],
                                                        temporal=TemporalFilter(valid_at=utc_now())))
        assert [edge.id for edge in visible.edges] == [new.id]

        # The second batch sees the first as context
        assert fake_extraction.calls_for(ExtractionTask.EXTRACT_ENTITIES)[1]['context'] == ['user: Alice works at Acme']

    @pytest.mark.asyncio
    async def test_duplicate_fact_is_not_stored(self, manager, fake_extraction):
        fake_extraction.resolve_mode = 'duplicate'
        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Acme', 'type': 'works at', 'description': 'Alice works at Acme'}]
        first = await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme')), processing_layer=2)

        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Acme', 'type': 'works at', 'description': 'Alice is employed by Acme'}]
        second = await manager.pipeline.ingest(batch(message('t2', 'Alice is employed by Acme')), processing_layer=2)

        alice = await entity_named(manager, 'Alice')
        acme = await entity_named(manager, 'Acme')
        facts = await facts_between(manager, alice.id, acme.id)

        assert len(facts) == 1
        assert facts[0].id in first.edge_ids
        assert facts[0].id in second.edge_ids
        assert second.invalidated_edge_ids == []

    @pytest.mark.asyncio
    async def test_merge_summarizes_new_information(self, manager, fake_extraction):
        await manager.pipeline.ingest(batch(message('t1', 'Alice joined')), processing_layer=2)
        fake_extraction.entities['alice'] = {'name': 'Alice', 'type': 'person', 'summary': 'Works on search'}
        await manager.pipeline.ingest(batch(message('t2', 'Alice ships search')), processing_layer=2)

        alice = await entity_named(manager, 'Alice')
        assert alice.content.summary == 'An engineer Works on search'
        assert len(fake_extraction.calls_for(ExtractionTask.SUMMARIZE_NODE)) == 1

    @pytest.mark.asyncio
    async def test_similar_entity_is_deduplicated(self, manager, fake_extraction):
        await manager.pipeline.ingest(batch(message('t1', 'Alice joined')), processing_layer=2)
        person = await entity_named(manager, 'Alice')

        # Same name under another type: only the dedupe task can link them
        fake_extraction.entities['alice'] = {'name': 'Alice', 'type': 'engineer', 'summary': 'An engineer'}
        result = await manager.pipeline.ingest(batch(message('t2', 'Alice again')), processing_layer=2)

        assert result.created_entity_ids == []
        assert result.merged_entity_ids == [person.id]
        assert len(fake_extraction.calls_for(ExtractionTask.DEDUPE_NODES)) == 1
        assert (await entity_named(manager, 'Alice')).type == 'entity.person'

    @pytest.mark.asyncio
    async def test_failure_keeps_committed_stages(self, manager, fake_extraction):
        fake_extraction.fail_on = {ExtractionTask.EXTRACT_TEMPORAL}
        with pytest.raises(ExtractionError):
            await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme')), processing_layer=2)

        assert await manager.store.get_node('ep_s1_t1') is not None
        await entity_named(manager, 'Alice')


class TestCommunityLayer:
    """Layer 3."""

    @pytest.mark.asyncio
    async def test_session_community(self, manager, fake_extraction):
        fake_extraction.relationships = [{'source': 'Alice', 'target': 'Acme', 'type': 'works at', 'description': 'Alice works at Acme'}]
        result = await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme')), processing_layer=3)

        alice = await entity_named(manager, 'Alice')
        acme = await entity_named(manager, 'Acme')
        assert len(result.community_ids) == 1

        community = await manager.store.get_node(result.community_ids[0])
        assert community.type == COMMUNITY_TYPE
        assert community.metadata['scope'] == 's1'
        assert sorted(community.content.member_ids) == sorted([alice.id, acme.id])

    @pytest.mark.asyncio
    async def test_layer_two_builds_no_communities(self, manager, fake_extraction):
        await manager.pipeline.ingest(batch(message('t1', 'Alice works at Acme')), processing_layer=2)
        assert fake_extraction.calls_for(ExtractionTask.REFINE_COMMUNITIES) == []
