"""Tests for branch collection, fusion and provisional fact extraction."""

import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from questgraph.models.core import QueryIntent, RelationalHit, SearchStrategy
from questgraph.models.errors import UpstreamTimeoutError
from questgraph.services.result_fuser import PROVISIONAL_PREDICATE, PROVISIONAL_SOURCE, ResultFuser

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def relational_hit(entity_id, score, facts=()):
    return RelationalHit(entity_id=entity_id, score=score, facts=list(facts))


class TestCollect:

    def test_fused_runs_branches_concurrently(self, fuser, similarity_hit):
        barrier = threading.Barrier(2, timeout=1.0)

        def similarity():
            barrier.wait()
            return [similarity_hit('doc-1', 0.9)]

        def relational():
            barrier.wait()
            return [relational_hit('acme', 0.8)]

        results = fuser.collect(SearchStrategy.FUSED, similarity, relational)

        assert [hit.id for hit in results.similarity] == ['doc-1']
        assert [hit.entity_id for hit in results.relational] == ['acme']
        assert results.warnings == []

    def test_fused_degrades_when_one_branch_fails(self, fuser):

        def similarity():
            raise RuntimeError('index unavailable')

        results = fuser.collect(SearchStrategy.FUSED, similarity, lambda: [relational_hit('acme', 0.8)])

        assert results.similarity == []
        assert [hit.entity_id for hit in results.relational] == ['acme']
        assert results.failed == ['similarity']
        assert 'index unavailable' in results.warnings[0]

    def test_branch_timeout_becomes_warning(self, resolver, store, scorer, search_config, similarity_hit):
        fuser = ResultFuser(resolver, store, scorer, replace(search_config, branch_timeout_seconds=0.1))

        def slow_similarity():
            time.sleep(0.5)
            return [similarity_hit('doc-1', 0.9)]

        results = fuser.collect(SearchStrategy.FUSED, slow_similarity, lambda: [relational_hit('acme', 0.8)])

        assert results.similarity == []
        assert [hit.entity_id for hit in results.relational] == ['acme']
        assert results.failed == ['similarity']
        assert any('similarity' in warning for warning in results.warnings)

    def test_single_branch_runs_only_that_branch(self, fuser, similarity_hit):
        calls = []

        def relational():
            calls.append('relational')
            return []

        results = fuser.collect(SearchStrategy.SIMILARITY, lambda: [similarity_hit('doc-1', 0.9)], relational)

        assert calls == []
        assert results.fallback is None

    def test_empty_branch_falls_back_to_other(self, fuser, similarity_hit):
        results = fuser.collect(SearchStrategy.RELATIONAL, lambda: [similarity_hit('doc-1', 0.9)], lambda: [])

        assert results.fallback == 'similarity'
        assert [hit.id for hit in results.similarity] == ['doc-1']

    def test_failed_branch_falls_back_to_other(self, fuser):

        def similarity():
            raise UpstreamTimeoutError('similarity exceeded 5s')

        results = fuser.collect(SearchStrategy.SIMILARITY, similarity, lambda: [relational_hit('acme', 0.8)])

        assert results.fallback == 'relational'
        assert [hit.entity_id for hit in results.relational] == ['acme']
        assert len(results.warnings) == 1


class TestScoreRelated:

    def test_scores_by_best_fact(self, fuser, store):
        store.store_fact('acme', 'employs', 'alice', 0.9, NOW - timedelta(days=1), 'crm')
        store.store_fact('acme', 'employs', 'bob', 0.7, NOW - timedelta(days=1), 'crm')
        related = store.find_related_entities('acme', as_of=NOW)

        hits = fuser.score_related(related, NOW)

        assert [hit.entity_id for hit in hits] == ['alice', 'bob']
        assert hits[0].score > hits[1].score
        assert hits[0].score == pytest.approx(0.9, abs=0.01)


class TestFuse:

    def test_dedups_by_canonical_entity(self, fuser, resolver, similarity_hit):
        resolver.merge(['acme'], 'acme-inc')
        similarity_hits = [similarity_hit('doc-1', 0.8, entity_id='acme')]
        relational_hits = [relational_hit('acme-inc', 0.6)]

        context = fuser.fuse(SearchStrategy.FUSED, QueryIntent.COMPANY, similarity_hits, relational_hits,
                             time.perf_counter())

        assert len(context.items) == 1
        item = context.items[0]
        assert item.key == 'acme-inc'
        assert item.kind == 'similarity'
        assert item.corroborations == 1
        assert item.score == pytest.approx(0.9)
        assert item.sources == ['doc:doc-1', 'entity:acme-inc']

    def test_documents_without_entity_are_kept_apart(self, fuser, similarity_hit):
        hits = [similarity_hit('doc-1', 0.8), similarity_hit('doc-2', 0.8)]

        context = fuser.fuse(SearchStrategy.SIMILARITY, QueryIntent.GENERAL, hits, [], time.perf_counter())

        assert [item.key for item in context.items] == ['doc:doc-1', 'doc:doc-2']

    def test_orders_by_score_then_key(self, fuser, similarity_hit):
        similarity_hits = [similarity_hit('doc-1', 0.5), similarity_hit('doc-2', 0.9)]
        relational_hits = [relational_hit('zeta', 0.7), relational_hit('alpha', 0.7)]

        context = fuser.fuse(SearchStrategy.FUSED, QueryIntent.SALES, similarity_hits, relational_hits,
                             time.perf_counter())

        assert [item.key for item in context.items] == ['doc:doc-2', 'alpha', 'zeta', 'doc:doc-1']

    def test_metadata(self, fuser, similarity_hit):
        context = fuser.fuse(SearchStrategy.FUSED,
                             QueryIntent.DECISION_MAKER, [similarity_hit('doc-1', 0.5)], [relational_hit('acme', 0.7)],
                             time.perf_counter(),
                             warnings=['similarity search unavailable'],
                             fallback=None)

        assert context.metadata['strategy'] == 'fused'
        assert context.metadata['intent'] == 'decision_maker'
        assert context.metadata['result_count'] == 2
        assert context.metadata['similarity_count'] == 1
        assert context.metadata['relational_count'] == 1
        assert context.metadata['processing_time'] >= 0
        assert context.metadata['warnings'] == ['similarity search unavailable']
        assert context.as_dict()['metadata'] == context.metadata


class TestExtractFacts:

    def test_stores_provisional_facts_for_episode(self, fuser, recorder, store):
        episode_id = recorder.create_episode('user-1', 'q', NOW)

        fact_ids = fuser.extract_facts([relational_hit('acme', 0.8), relational_hit('globex', 0.7)], episode_id, NOW)

        assert len(fact_ids) == 2
        facts = [store.get_fact(fact_id) for fact_id in fact_ids]
        assert {fact.object for fact in facts} == {'acme', 'globex'}
        for fact in facts:
            assert fact.subject == 'user-query'
            assert fact.predicate == PROVISIONAL_PREDICATE
            assert fact.source == PROVISIONAL_SOURCE
            assert fact.confidence == 0.3
            assert fact.episode_id == episode_id

    def test_skips_provisional_subject(self, fuser, recorder):
        episode_id = recorder.create_episode('user-1', 'q', NOW)

        assert fuser.extract_facts([relational_hit('user-query', 0.8)], episode_id, NOW) == []

    def test_store_failures_are_skipped(self, fuser):
        assert fuser.extract_facts([relational_hit('acme', 0.8)], 'missing-episode', NOW) == []
