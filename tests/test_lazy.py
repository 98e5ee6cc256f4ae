import threading

import pytest

from change_monitor.lazy import Deferred, Materializer


def test_nothing_runs_until_evaluated():
    calls = []
    expr = Deferred(lambda x: calls.append(x) or x * 2, 21)
    assert calls == []
    assert expr.evaluate() == 42
    assert calls == [21]


def test_shared_subgraph_runs_once():
    calls = []

    def load():
        calls.append("load")
        return 3

    base = Deferred(load)
    total = Deferred(lambda a, b: a + b, base.then(lambda v: v * 10), base.then(lambda v: v + 1))
    assert total.evaluate() == 34
    assert calls == ["load"]


def test_constant_node():
    assert Deferred.of([1, 2]).then(len).evaluate() == 2


def test_materialize_returns_future():
    with Materializer(max_workers=2) as materializer:
        future = materializer.materialize(Deferred(sum, [1, 2, 3]))
        assert future.result(timeout=5) == 6


def test_gather_runs_graphs_concurrently():
    barrier = threading.Barrier(2, timeout=5)

    def wait_for_peer(value):
        barrier.wait()
        return value

    with Materializer(max_workers=2) as materializer:
        results = materializer.gather(Deferred(wait_for_peer, "a"), Deferred(wait_for_peer, "b"))
    assert results == ["a", "b"]


def test_gather_reraises_errors():
    def fail():
        raise ValueError("boom")

    with Materializer() as materializer:
        with pytest.raises(ValueError, match="boom"):
            materializer.gather(Deferred(lambda: 1), Deferred(fail))
