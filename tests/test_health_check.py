"""Tests for component health reporting."""

from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from questgraph.services.memory_management import MemoryManagementService
from questgraph.utils.graph_store import InMemoryGraphStore
from questgraph.utils.health_check import get_health_status


@pytest.fixture
def local_config(app_config):
    return replace(app_config, opensearch=replace(app_config.opensearch, endpoint=''))


class TestGetHealthStatus:

    def test_probes_the_live_graph(self, local_config):
        service = MemoryManagementService(graph=InMemoryGraphStore(), app_config=local_config)

        status = get_health_status(local_config, graph=lambda: service.graph)

        assert status == {'graph': {'healthy': True, 'service': 'In-memory graph store', 'backend': 'memory'}}

    def test_unhealthy_graph_is_reported(self, local_config):
        graph = MagicMock()
        graph.health_check.return_value = False

        status = get_health_status(local_config, graph=lambda: graph)

        assert status['graph']['healthy'] is False
        graph.health_check.assert_called_once_with()

    def test_graph_that_cannot_be_built(self, local_config):

        def broken():
            raise RuntimeError('no credentials')

        status = get_health_status(local_config, graph=broken)

        assert status['graph']['healthy'] is False
        assert status['graph']['error'] == 'no credentials'

    def test_memory_backend_without_live_graph_is_not_reported(self, local_config):
        assert get_health_status(local_config) == {}

    def test_neptune_backend_without_live_graph(self, local_config):
        neptune = replace(local_config, graph=replace(local_config.graph, backend='neptune'))

        with patch('questgraph.utils.health_check.NeptuneClient') as client:
            client.return_value.health_check.return_value = True
            status = get_health_status(neptune)

        client.assert_called_once_with(neptune.neptune)
        assert status['graph']['healthy'] is True
        assert status['graph']['service'] == 'Amazon Neptune'

    def test_similarity_services_are_probed_when_configured(self, local_config):
        remote = replace(local_config, opensearch=replace(local_config.opensearch, endpoint='https://search.example.com'))

        with patch('questgraph.utils.health_check.OpenSearchClient') as opensearch, \
                patch('questgraph.utils.health_check.BedrockEmbed') as embed:
            opensearch.return_value.health_check.return_value = True
            embed.return_value.health_check.return_value = False
            status = get_health_status(remote)

        assert status['opensearch']['healthy'] is True
        assert status['bedrock_embed']['healthy'] is False
