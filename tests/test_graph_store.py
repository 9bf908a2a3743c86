"""Tests for the in-memory graph store."""
import pytest

from temporal_memory.models.core import (EntityContent, EpisodeContent, GraphEdge, GraphFilter, GraphNode, TemporalFilter)
from temporal_memory.services.graph_store import NotFoundError, ReferencedNodeError, TemporalInvariantError

from conftest import BASE_TIME, at


def entity(node_id, name, created=BASE_TIME, valid=BASE_TIME, expired=None, **metadata):
    return GraphNode(id=node_id,
                     type='entity.person',
                     created_at=created,
                     valid_at=valid,
                     expired_at=expired,
                     metadata=metadata,
                     content=EntityContent(name=name, type='entity.person'))


def episode(node_id, text='hello'):
    return GraphNode(id=node_id,
                     type='episode',
                     created_at=BASE_TIME,
                     valid_at=BASE_TIME,
                     content=EpisodeContent(actor='user', text=text, session_id='s1', turn_id=node_id, timestamp=BASE_TIME))


def edge(edge_id, source, target, edge_type='KNOWS', valid=BASE_TIME, invalid=None):
    return GraphEdge(id=edge_id, type=edge_type, created_at=BASE_TIME, valid_at=valid, source_id=source, target_id=target,
                     content=f'{source} {edge_type} {target}', invalid_at=invalid)


class TestNodes:
    """Node CRUD."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, store):
        await store.add_node(entity('a', 'Alice'))
        node = await store.get_node('a')
        assert node.content.name == 'Alice'
        assert await store.get_node('missing') is None

    @pytest.mark.asyncio
    async def test_update_merges_fields_and_metadata(self, store):
        await store.add_node(entity('a', 'Alice', role='user'))
        updated = await store.update_node('a', {'metadata': {'mentionCount': 2}, 'embedding': [1.0, 0.0]})
        assert updated.metadata == {'role': 'user', 'mentionCount': 2}
        assert updated.embedding == [1.0, 0.0]
        assert (await store.get_node('a')).metadata['mentionCount'] == 2

    @pytest.mark.asyncio
    async def test_update_missing_node_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_node('ghost', {'metadata': {'x': 1}})

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_field_and_id_change(self, store):
        await store.add_node(entity('a', 'Alice'))
        with pytest.raises(ValueError):
            await store.update_node('a', {'colour': 'red'})
        with pytest.raises(ValueError):
            await store.update_node('a', {'id': 'b'})

    @pytest.mark.asyncio
    async def test_expired_must_follow_created(self, store):
        with pytest.raises(TemporalInvariantError):
            await store.add_node(entity('a', 'Alice', created=at(1), valid=at(0), expired=at(1)))

    @pytest.mark.asyncio
    async def test_expire_node(self, store):
        await store.add_node(entity('a', 'Alice'))
        expired = await store.expire_node('a', at(2))
        assert expired.expired_at == at(2)


class TestReferentialIntegrity:
    """Edges must point at existing nodes."""

    @pytest.mark.asyncio
    async def test_add_edge_with_missing_endpoint_fails_without_mutation(self, store):
        await store.add_node(entity('a', 'Alice'))

        with pytest.raises(NotFoundError):
            await store.add_edge(edge('e1', 'a', 'ghost'))
        with pytest.raises(NotFoundError):
            await store.add_edge(edge('e2', 'ghost', 'a'))

        assert await store.get_edge('e1') is None
        assert await store.get_edge('e2') is None
        assert await store.get_edges_for_node('a') == []
        assert store.stats()['edges'] == 0

    @pytest.mark.asyncio
    async def test_update_missing_edge_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_edge('ghost', {'content': 'x'})

    @pytest.mark.asyncio
    async def test_edge_valid_must_not_follow_invalid(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        with pytest.raises(TemporalInvariantError):
            await store.add_edge(edge('e1', 'a', 'b', valid=at(3), invalid=at(1)))

    @pytest.mark.asyncio
    async def test_delete_referenced_node_is_refused(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        await store.add_edge(edge('e1', 'a', 'b'))

        with pytest.raises(ReferencedNodeError):
            await store.delete_node('b')
        assert await store.get_node('b') is not None

    @pytest.mark.asyncio
    async def test_cascade_delete_removes_edges(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        await store.add_edge(edge('e1', 'a', 'b'))

        assert await store.delete_node('b', cascade=True) is True
        assert await store.get_edge('e1') is None
        assert await store.get_edges_for_node('a') == []
        assert await store.delete_node('b') is False


class TestEdges:
    """Edge updates, supersession and traversal."""

    @pytest.mark.asyncio
    async def test_invalidate_edge_keeps_it(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        await store.add_edge(edge('e1', 'a', 'b', valid=at(1)))

        invalidated = await store.invalidate_edge('e1', at(5), reason='moved away')
        assert invalidated.invalid_at == at(5)
        assert invalidated.metadata['invalidationReason'] == 'moved away'
        assert await store.get_edge('e1') is not None

    @pytest.mark.asyncio
    async def test_invalidate_before_valid_is_clamped(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        await store.add_edge(edge('e1', 'a', 'b', valid=at(3)))

        invalidated = await store.invalidate_edge('e1', at(1))
        assert invalidated.invalid_at == at(3)

    @pytest.mark.asyncio
    async def test_edges_for_node_by_direction(self, store):
        for node_id in 'abc':
            await store.add_node(entity(node_id, node_id.upper()))
        await store.add_edge(edge('ab', 'a', 'b'))
        await store.add_edge(edge('cb', 'c', 'b'))

        assert [e.id for e in await store.get_edges_for_node('b', direction='in')] == ['ab', 'cb']
        assert await store.get_edges_for_node('b', direction='out') == []
        assert [e.id for e in await store.get_edges_for_node('a')] == ['ab']
        with pytest.raises(ValueError):
            await store.get_edges_for_node('a', direction='sideways')

    @pytest.mark.asyncio
    async def test_edges_between(self, store):
        for node_id in 'abc':
            await store.add_node(entity(node_id, node_id.upper()))
        await store.add_edge(edge('ab', 'a', 'b'))
        await store.add_edge(edge('bc', 'b', 'c'))

        assert [e.id for e in await store.get_edges_between(['a', 'b'])] == ['ab']

    @pytest.mark.asyncio
    async def test_paths(self, store):
        for node_id in 'abcd':
            await store.add_node(entity(node_id, node_id.upper()))
        await store.add_edge(edge('ab', 'a', 'b'))
        await store.add_edge(edge('bc', 'b', 'c'))
        await store.add_edge(edge('ad', 'a', 'd'))
        await store.add_edge(edge('dc', 'd', 'c'))

        assert await store.shortest_path_length('a', ['c']) == 2
        assert await store.shortest_path_length('a', ['a']) == 0
        assert await store.shortest_path_length('a', ['c'], max_depth=1) is None
        assert await store.count_paths('a', 'c') == 2
        assert await store.get_neighbors('a') == ['b', 'd']


class TestTemporalVisibility:
    """Point-in-time and range queries."""

    @pytest.mark.asyncio
    async def test_node_visible_until_expired(self, store):
        d1, d2, d3 = at(1), at(2), at(3)
        await store.add_node(entity('a', 'Alice', created=d1, valid=d1, expired=d3))

        for moment, visible in ((d1, True), (d2, True), (d3, False), (at(4), False)):
            snapshot = await store.query(GraphFilter(temporal=TemporalFilter(valid_at=moment)))
            assert ('a' in [n.id for n in snapshot.nodes]) is visible

    @pytest.mark.asyncio
    async def test_not_visible_before_recorded(self, store):
        await store.add_node(entity('a', 'Alice', created=at(2), valid=at(0)))
        snapshot = await store.query(GraphFilter(temporal=TemporalFilter(valid_at=at(1))))
        assert snapshot.nodes == []

    @pytest.mark.asyncio
    async def test_invalidated_edge_hidden_after_invalidation(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        await store.add_edge(edge('e1', 'a', 'b', valid=at(1), invalid=at(3)))

        before = await store.query(GraphFilter(temporal=TemporalFilter(valid_at=at(2))))
        after = await store.query(GraphFilter(temporal=TemporalFilter(valid_at=at(3))))
        assert [e.id for e in before.edges] == ['e1']
        assert after.edges == []

    @pytest.mark.asyncio
    async def test_range_overlap(self, store):
        await store.add_node(entity('early', 'Early', created=at(0), valid=at(0), expired=at(2)))
        await store.add_node(entity('late', 'Late', created=at(0), valid=at(5)))

        snapshot = await store.query(GraphFilter(temporal=TemporalFilter(valid_after=at(3), valid_before=at(6))))
        assert [n.id for n in snapshot.nodes] == ['late']

        snapshot = await store.query(GraphFilter(temporal=TemporalFilter(valid_before=at(1))))
        assert [n.id for n in snapshot.nodes] == ['early']


class TestQuery:
    """Filter order and query surfaces."""

    @pytest.mark.asyncio
    async def test_episodes_excluded_by_default(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(episode('ep1'))

        assert [n.id for n in (await store.query()).nodes] == ['a']
        assert [n.id for n in (await store.query(GraphFilter(node_types=['episode']))).nodes] == ['ep1']

    @pytest.mark.asyncio
    async def test_type_prefix_and_metadata(self, store):
        await store.add_node(entity('a', 'Alice', sessionId='s1'))
        await store.add_node(entity('b', 'Bob', sessionId='s2'))

        snapshot = await store.query(GraphFilter(node_types=['entity'], metadata={'sessionId': 's2'}))
        assert [n.id for n in snapshot.nodes] == ['b']

        snapshot = await store.query(GraphFilter(node_types=['community']))
        assert snapshot.nodes == []

    @pytest.mark.asyncio
    async def test_edges_follow_returned_nodes(self, store):
        await store.add_node(entity('a', 'Alice'))
        await store.add_node(entity('b', 'Bob'))
        await store.add_node(episode('ep1', 'Alice and Bob'))
        await store.add_edge(edge('m1', 'ep1', 'a', edge_type='MENTIONS'))
        await store.add_edge(edge('ab', 'a', 'b'))

        snapshot = await store.query(GraphFilter.from_dict({'edgeTypes': ['KNOWS']}))
        assert [e.id for e in snapshot.edges] == ['ab']

        snapshot = await store.query(GraphFilter(node_types=['episode']))
        assert [e.id for e in snapshot.edges] == ['m1']

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.add_node(entity('a', 'Alice'))
        store.hash_registry.claim('x', 'y')
        await store.clear()

        assert (await store.query()).nodes == []
        assert store.stats() == {'nodes': 0, 'edges': 0, 'issued_ids': 0}
