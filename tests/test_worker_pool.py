"""Tests for the shared branch worker pool."""

import time

import pytest

from questgraph.models.errors import UpstreamTimeoutError
from questgraph.utils.worker_pool import call_with_timeout, run_branches


class TestRunBranches:

    def test_collects_results_and_exceptions(self):

        def boom():
            raise ValueError('bad branch')

        results = run_branches({'ok': lambda: 42, 'bad': boom}, timeout_seconds=1.0)

        assert results['ok'] == 42
        assert isinstance(results['bad'], ValueError)

    def test_pending_branch_times_out(self):
        results = run_branches({'slow': lambda: time.sleep(0.5), 'fast': lambda: 'done'}, timeout_seconds=0.1)

        assert results['fast'] == 'done'
        assert isinstance(results['slow'], UpstreamTimeoutError)

    def test_empty(self):
        assert run_branches({}, timeout_seconds=1.0) == {}


class TestCallWithTimeout:

    def test_returns_value(self):
        assert call_with_timeout(lambda: 'value', 1.0) == 'value'

    def test_raises_call_error(self):

        def boom():
            raise KeyError('missing')

        with pytest.raises(KeyError):
            call_with_timeout(boom, 1.0)

    def test_raises_timeout(self):
        with pytest.raises(UpstreamTimeoutError):
            call_with_timeout(lambda: time.sleep(0.5), 0.1)
