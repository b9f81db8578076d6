"""Pytest configuration and fixtures."""

import time
from dataclasses import replace

import pytest

from questgraph.models.core import SimilarityHit
from questgraph.services.confidence import ConfidenceScorer
from questgraph.services.entity_resolver import EntityResolver
from questgraph.services.episode_recorder import EpisodeRecorder
from questgraph.services.fact_store import FactStore
from questgraph.services.result_fuser import ResultFuser
from questgraph.utils.config import FactStoreConfig, GraphConfig, SearchConfig, config
from questgraph.utils.graph_store import InMemoryGraphStore


class FakeSimilarity:
    """Similarity search collaborator returning canned hits."""

    def __init__(self, hits=None, error=None, delay=0.0):
        self.hits = list(hits or [])
        self.error = error
        self.delay = delay
        self.calls = []

    def search(self, query_embedding, limit, threshold, filters=None):
        self.calls.append({'embedding': query_embedding, 'limit': limit, 'threshold': threshold, 'filters': filters})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [hit for hit in self.hits if hit.similarity_score >= threshold][:limit]


class FakeEmbedder:

    def __init__(self):
        self.texts = []

    def embed(self, text):
        self.texts.append(text)
        return [0.1, 0.2, 0.3]


@pytest.fixture
def fact_config():
    return FactStoreConfig(open_half_life_days=180,
                           closed_half_life_days=60,
                           freshness_days=30,
                           default_decay_rate=0.5,
                           corroboration_step=0.1,
                           corroboration_cap=0.3,
                           source_reliability={'rumor': 0.5})


@pytest.fixture
def search_config():
    return SearchConfig(similarity_limit=10,
                        similarity_threshold=0.0,
                        related_min_confidence=0.7,
                        related_limit=20,
                        branch_timeout_seconds=2.0,
                        max_workers=4,
                        provisional_confidence=0.3,
                        provisional_subject='user-query',
                        recent_fact_days=30,
                        llm_analysis=False)


@pytest.fixture
def app_config(fact_config, search_config):
    return replace(config, graph=GraphConfig(backend='memory'), fact_store=fact_config, search=search_config)


@pytest.fixture
def graph():
    return InMemoryGraphStore()


@pytest.fixture
def resolver(graph):
    return EntityResolver(graph)


@pytest.fixture
def store(graph, resolver, fact_config):
    return FactStore(graph, resolver, fact_config)


@pytest.fixture
def recorder(graph):
    return EpisodeRecorder(graph)


@pytest.fixture
def scorer(fact_config):
    return ConfidenceScorer(fact_config)


@pytest.fixture
def fuser(resolver, store, scorer, search_config):
    return ResultFuser(resolver, store, scorer, search_config)


@pytest.fixture
def make_similarity():
    return FakeSimilarity


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def similarity_hit():

    def _make(doc_id, score, entity_id=None, content=None):
        metadata = {'entity_id': entity_id} if entity_id else {}
        return SimilarityHit(id=doc_id, content=content or f'document {doc_id}', similarity_score=score, metadata=metadata)

    return _make
