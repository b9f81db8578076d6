"""Tests for lazy canonicalization and entity merges."""

import threading
from datetime import datetime, timezone

import pytest

from questgraph.models.errors import ValidationError
from questgraph.services.entity_resolver import EntityResolver
from questgraph.utils.graph_store import InMemoryGraphStore


def at(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)


def canonical_map(resolver, ids):
    return {raw_id: resolver.resolve(raw_id) for raw_id in ids}


class TestResolve:

    def test_unknown_id_is_its_own_canonical(self, resolver):
        assert resolver.resolve('never-seen') == 'never-seen'

    @pytest.mark.parametrize('raw_id', ['', '   ', None, 42])
    def test_rejects_bad_ids(self, resolver, raw_id):
        with pytest.raises(ValidationError):
            resolver.resolve(raw_id)

    def test_follows_redirect(self, resolver):
        resolver.merge(['acme'], 'acme-inc')

        assert resolver.resolve('acme') == 'acme-inc'
        assert resolver.resolve('acme-inc') == 'acme-inc'


class TestMerge:

    def test_merge_scenario(self, resolver, store):
        resolver.merge(['acme-inc', 'acme'], 'acme-inc')

        fact_id = store.store_fact('acme', 'located_in', 'berlin', 0.7, at(2024, 1, 1), 'crm')

        assert store.get_fact(fact_id).subject == 'acme-inc'
        assert resolver.get_entity('acme').canonical_id == 'acme-inc'
        assert resolver.get_entity('acme-inc').aliases == frozenset({'acme'})

    def test_repoints_existing_facts(self, resolver, store, graph):
        first = store.store_fact('acme', 'employs', 'alice', 0.8, at(2024, 1, 1), 'crm')
        second = store.store_fact('bob', 'advises', 'acme', 0.8, at(2024, 1, 1), 'crm')

        result = resolver.merge(['acme'], 'acme-inc')

        assert result.facts_repointed == 2
        assert store.get_fact(first).subject == 'acme-inc'
        assert store.get_fact(second).object == 'acme-inc'
        assert graph.facts_for_entity('acme') == []

    def test_pre_registers_unseen_ids(self, resolver, store):
        resolver.merge(['initech-llc'], 'initech')

        fact_id = store.store_fact('initech-llc', 'uses', 'jira', 0.6, at(2024, 1, 1), 'crm')

        assert store.get_fact(fact_id).subject == 'initech'

    def test_transitive_merges_match_direct_merge(self):
        stepwise = EntityResolver(InMemoryGraphStore())
        stepwise.merge(['A', 'B'], 'B')
        stepwise.merge(['B', 'C'], 'C')

        direct = EntityResolver(InMemoryGraphStore())
        direct.merge(['A', 'B', 'C'], 'C')

        ids = ['A', 'B', 'C']
        assert canonical_map(stepwise, ids) == canonical_map(direct, ids) == {'A': 'C', 'B': 'C', 'C': 'C'}
        assert stepwise.get_resolution('C').aliases == direct.get_resolution('C').aliases
        assert stepwise.get_resolution('C').merged_from == direct.get_resolution('C').merged_from

    def test_redirects_are_compressed(self, resolver, graph):
        resolver.merge(['A'], 'B')
        resolver.merge(['B'], 'C')

        assert graph.get_entity('A').canonical_id == 'C'
        assert resolver.get_resolution('B') is None

    def test_repeating_a_merge_changes_nothing(self, resolver, store):
        store.store_fact('acme', 'employs', 'alice', 0.8, at(2024, 1, 1), 'crm')
        first = resolver.merge(['acme'], 'acme-inc')
        record = resolver.get_resolution('acme-inc')

        second = resolver.merge(['acme'], 'acme-inc')

        assert first.changed is True
        assert second.changed is False
        assert second.facts_repointed == 0
        assert resolver.get_resolution('acme-inc') is record

    def test_resolution_record(self, resolver):
        result = resolver.merge(['acme', 'acme-corp'], 'acme-inc')

        record = resolver.get_resolution('acme-inc')
        assert result.canonical_id == 'acme-inc'
        assert record.aliases == frozenset({'acme', 'acme-corp'})
        assert record.merged_from == frozenset({'acme', 'acme-corp'})

    def test_merging_into_an_alias_promotes_it(self, resolver):
        resolver.merge(['acme'], 'acme-inc')

        resolver.merge(['acme-inc'], 'acme')

        assert resolver.resolve('acme-inc') == 'acme'
        assert resolver.resolve('acme') == 'acme'

    def test_rejects_bad_canonical_id(self, resolver):
        with pytest.raises(ValidationError):
            resolver.merge(['acme'], '')

    def test_concurrent_writes_never_land_on_alias(self, resolver, store, graph):
        writers = 8
        barrier = threading.Barrier(writers + 1)

        def write(index):
            barrier.wait()
            store.store_fact('acme', 'employs', f'person-{index}', 0.8, at(2024, 1, 1), 'crm')

        def merge():
            barrier.wait()
            resolver.merge(['acme'], 'acme-inc')

        threads = [threading.Thread(target=write, args=(i, )) for i in range(writers)]
        threads.append(threading.Thread(target=merge))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert graph.facts_for_entity('acme') == []
        assert len(graph.facts_for_entity('acme-inc')) == writers

    def test_overlapping_concurrent_merges_converge(self, resolver, store, graph):
        store.store_fact('A', 'knows', 'x', 0.5, at(2024, 1, 1), 'crm')
        barrier = threading.Barrier(2)

        def merge(ids, target):
            barrier.wait()
            resolver.merge(ids, target)

        threads = [
            threading.Thread(target=merge, args=(['A', 'B'], 'B')),
            threading.Thread(target=merge, args=(['B', 'C'], 'C')),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        canonical = {resolver.resolve(raw_id) for raw_id in ('A', 'B')}
        assert len(canonical) == 1
        assert graph.facts_for_entity('A') == []
