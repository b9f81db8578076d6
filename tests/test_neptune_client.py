"""Tests for the Neptune graph store: property mapping and conditional mutations."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, call, patch

import pytest
from gremlin_python.process.traversal import Cardinality

from questgraph.models.core import Fact
from questgraph.utils.config import config
from questgraph.utils.neptune_client import (ENTITY_LABEL, NeptuneClient, NeptuneError, episode_from_properties,
                                            fact_from_properties, resolution_from_properties)

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
JUL_1 = datetime(2024, 7, 1, tzinfo=timezone.utc)


class TestFactFromProperties:

    def test_open_fact(self):
        fact = fact_from_properties({
            'fact_id': 'f1',
            'subject': 'alice',
            'predicate': 'works_at',
            'object': 'acme',
            'confidence': 0.9,
            'valid_from': JAN_1.timestamp(),
            'source': 'crm',
        })

        assert fact.id == 'f1'
        assert fact.valid_from == JAN_1
        assert fact.valid_to is None
        assert fact.episode_id is None

    def test_closed_fact_with_episode(self):
        fact = fact_from_properties({
            'fact_id': 'f1',
            'subject': 'alice',
            'predicate': 'works_at',
            'object': 'acme',
            'confidence': '0.5',
            'valid_from': JAN_1.timestamp(),
            'valid_to': JUL_1.timestamp(),
            'source': 'crm',
            'episode_id': 'e1',
        })

        assert fact.confidence == 0.5
        assert fact.valid_to == JUL_1
        assert fact.episode_id == 'e1'


class TestVertexProperties:

    def test_episode_unwraps_vertex_property_lists(self):
        episode = episode_from_properties({
            'episode_id': ['e1'],
            'user_id': ['u1'],
            'query': ['who runs acme?'],
            'timestamp': [JAN_1.timestamp()],
            'context': ['{"strategy": "fused"}'],
            'fact_ids': ['["f1", "f2"]'],
            'outcome': ['partial'],
        })

        assert episode.id == 'e1'
        assert episode.timestamp == JAN_1
        assert episode.context == {'strategy': 'fused'}
        assert episode.fact_ids == ('f1', 'f2')
        assert episode.outcome == 'partial'

    def test_resolution(self):
        record = resolution_from_properties({
            'canonical_id': ['acme-inc'],
            'aliases': ['["acme", "acme-corp"]'],
            'merged_from': ['["acme"]'],
            'last_updated': [JUL_1.timestamp()],
        })

        assert record.canonical_id == 'acme-inc'
        assert record.aliases == frozenset({'acme', 'acme-corp'})
        assert record.merged_from == frozenset({'acme'})
        assert record.last_updated == JUL_1


@pytest.fixture
def client():
    with patch.object(NeptuneClient, '_connect'):
        instance = NeptuneClient(config.neptune)
    instance.g = MagicMock()
    return instance


def episode_row(fact_ids):
    return {
        'episode_id': ['e1'],
        'user_id': ['u1'],
        'query': ['who runs acme?'],
        'timestamp': [JAN_1.timestamp()],
        'context': ['{}'],
        'fact_ids': [fact_ids],
    }


class TestRepointFacts:

    def test_adds_new_edge_and_drops_old_in_one_traversal(self, client):
        fact = Fact(id='f1',
                    subject='acme',
                    predicate='employs',
                    object='alice',
                    confidence=0.8,
                    valid_from=JAN_1,
                    source='crm')

        with patch.object(client, 'facts_for_entity', return_value=[fact]):
            assert client.repoint_facts('acme', 'acme-inc') == 1

        names = [name for name, _, _ in client.g.mock_calls]
        drops = [name for name in names if name.endswith('.drop')]
        assert len(drops) == 1
        assert drops[0].index('add_e()') < drops[0].index('select()')
        assert any(args == (ENTITY_LABEL, 'entity_id', 'acme-inc') for _, args, _ in client.g.mock_calls)
        assert ('fact_id', 'f1') in [args for _, args, _ in client.g.mock_calls]


class TestAppendEpisodeFacts:

    def test_retries_when_a_concurrent_append_wins(self, client):
        vertex = client.g.V.return_value.has.return_value
        vertex.value_map.return_value.to_list.side_effect = [[episode_row('["f1"]')], [episode_row('["f1", "f3"]')]]
        conditional = vertex.has.return_value.property.return_value.count.return_value
        conditional.next.side_effect = [0, 1]

        episode = client.append_episode_facts('e1', ['f2'])

        assert episode.fact_ids == ('f1', 'f3', 'f2')
        assert vertex.has.call_args_list == [call('fact_ids', '["f1"]'), call('fact_ids', '["f1", "f3"]')]
        assert vertex.has.return_value.property.call_args == call(Cardinality.single, 'fact_ids', '["f1", "f3", "f2"]')

    def test_already_listed_ids_are_not_rewritten(self, client):
        vertex = client.g.V.return_value.has.return_value
        vertex.value_map.return_value.to_list.return_value = [episode_row('["f1", "f2"]')]

        episode = client.append_episode_facts('e1', ['f2'])

        assert episode.fact_ids == ('f1', 'f2')
        vertex.has.assert_not_called()

    def test_missing_episode(self, client):
        client.g.V.return_value.has.return_value.value_map.return_value.to_list.return_value = []

        assert client.append_episode_facts('missing', ['f1']) is None

    def test_gives_up_under_contention(self, client):
        vertex = client.g.V.return_value.has.return_value
        vertex.value_map.return_value.to_list.return_value = [episode_row('["f1"]')]
        vertex.has.return_value.property.return_value.count.return_value.next.return_value = 0

        with pytest.raises(NeptuneError):
            client.append_episode_facts('e1', ['f2'])
