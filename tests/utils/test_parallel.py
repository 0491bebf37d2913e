# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import threading

import pytest

from k3forge.errors import AggregateError, NodeOperationError, ReadinessTimeoutError
from k3forge.utils.parallel import run_parallel
from k3forge.utils.retry import RetryError, retry
from k3forge.utils.waiters import attempts_for, wait_until


def test_results_are_index_addressed():
    outcome = run_parallel([3, 1, 2], lambda n: n * 10)
    assert outcome.ok
    assert outcome.results == [30, 10, 20]


def test_k_of_n_failures_are_all_reported():
    def _work(n):
        if n % 2:
            raise RuntimeError(f"node {n} broke")
        return n

    outcome = run_parallel(range(6), _work, label=lambda n: f"node-{n}")

    assert outcome.results == [0, None, 2, None, 4, None]
    assert sorted(e.node for e in outcome.errors) == ["node-1", "node-3", "node-5"]
    assert all(isinstance(e, NodeOperationError) for e in outcome.errors)

    with pytest.raises(AggregateError) as exc:
        outcome.raise_for_errors("step failed")
    assert len(exc.value.errors) == 3
    assert "3 error(s)" in str(exc.value)


def test_failure_does_not_cancel_siblings():
    barrier = threading.Barrier(3, timeout=5)
    finished = []

    def _work(n):
        barrier.wait()
        if n == 0:
            raise RuntimeError("first one fails")
        finished.append(n)

    outcome = run_parallel([0, 1, 2], _work)
    assert sorted(finished) == [1, 2]
    assert len(outcome.errors) == 1


def test_empty_input():
    outcome = run_parallel([], lambda x: x)
    assert outcome.results == []
    outcome.raise_for_errors("nothing")


def test_attempts_for():
    assert attempts_for(120, 2) == 60
    assert attempts_for(10, 3) == 4
    assert attempts_for(1, 0) == 1


def test_wait_until_returns_first_truthy_value():
    values = iter([None, 0, "ok"])
    assert wait_until(lambda: next(values), retries=5, delay=1, error="x") == "ok"


def test_wait_until_raises_readiness_timeout():
    calls = []
    with pytest.raises(ReadinessTimeoutError, match="server demo-master-1 did not start"):
        wait_until(lambda: calls.append(1), retries=4, delay=1, error="server demo-master-1 did not start")
    assert len(calls) == 4


def test_retry_backs_off_and_gives_up():
    attempts = []

    @retry(retries=3, delay=1, backoff=2, retry_on=(ValueError,), on_retry=lambda a, e: attempts.append(a))
    def _flaky():
        raise ValueError("nope")

    with pytest.raises(RetryError) as exc:
        _flaky()
    assert attempts == [1, 2, 3]
    assert isinstance(exc.value.__cause__, ValueError)


def test_retry_does_not_catch_other_errors():
    @retry(retries=3, delay=0, retry_on=(ValueError,))
    def _broken():
        raise KeyError("boom")

    with pytest.raises(KeyError):
        _broken()
