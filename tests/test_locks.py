"""Tests for the striped keyed lock table."""

import threading
from datetime import datetime, timezone

import pytest

from questgraph.utils.locks import DEFAULT_STRIPES, KeyedLocks


class TestKeyedLocks:

    def test_table_does_not_grow_with_keys(self, resolver, store):
        for index in range(500):
            store.store_fact(f'person-{index}', 'works_at', f'company-{index}', 0.8,
                             datetime(2024, 1, 1, tzinfo=timezone.utc), 'crm')

        assert len(resolver._locks._stripes) == DEFAULT_STRIPES

    def test_keys_on_one_stripe_do_not_deadlock(self):
        locks = KeyedLocks(stripes=1)

        with locks.hold(['acme', 'globex', 'acme']):
            pass

        with locks.hold(['initech']):
            pass

    def test_holder_blocks_same_key(self):
        locks = KeyedLocks(stripes=8)
        entered = threading.Event()
        release = threading.Event()
        acquired = threading.Event()

        def first():
            with locks.hold(['acme']):
                entered.set()
                release.wait(2.0)

        def second():
            entered.wait(2.0)
            with locks.hold(['acme']):
                acquired.set()

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for thread in threads:
            thread.start()

        assert entered.wait(2.0)
        assert not acquired.wait(0.1)
        release.set()
        for thread in threads:
            thread.join()
        assert acquired.is_set()

    def test_overlapping_holders_finish(self):
        locks = KeyedLocks(stripes=4)
        keys = ['a', 'b', 'c', 'd', 'e']
        done = []

        def worker(ordered):
            for _ in range(50):
                with locks.hold(ordered):
                    pass
            done.append(True)

        threads = [threading.Thread(target=worker, args=(keys, )), threading.Thread(target=worker, args=(keys[::-1], ))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5.0)

        assert len(done) == 2

    def test_rejects_empty_table(self):
        with pytest.raises(ValueError):
            KeyedLocks(stripes=0)
