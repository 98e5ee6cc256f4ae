# change_monitor/lazy.py
# Deferred expression graphs with a single materialization boundary.
#
# Building a Deferred is cheap and has no side effects; nothing runs until
# Materializer.materialize() (async, returns a Future) or Deferred.evaluate().
# Nodes are immutable, so independent graphs can be materialized in parallel.

import concurrent.futures
import logging
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class Deferred:
    """A pure computation over the results of other Deferred nodes."""

    __slots__ = ("_compute", "_inputs", "label")

    def __init__(self, compute: Callable, *inputs, label: Optional[str] = None):
        self._compute = compute
        self._inputs = tuple(inputs)
        self.label = label or getattr(compute, "__name__", "deferred")

    @classmethod
    def of(cls, value: Any, label: str = "constant") -> "Deferred":
        """Wrap an already concrete value."""
        return cls(lambda: value, label=label)

    def then(self, fn: Callable, *extra, label: Optional[str] = None) -> "Deferred":
        """Apply fn(result, *extra_results) once this node is evaluated."""
        return Deferred(fn, self, *extra, label=label)

    def evaluate(self, _cache: Optional[dict] = None) -> Any:
        """Synchronously evaluate the graph. Shared sub-graphs run once."""
        cache = {} if _cache is None else _cache
        key = id(self)
        if key in cache:
            return cache[key]
        args = [
            node.evaluate(cache) if isinstance(node, Deferred) else node
            for node in self._inputs
        ]
        logger.debug(f"Evaluating {self.label}")
        result = self._compute(*args)
        cache[key] = result
        return result

    def __repr__(self):
        return f"Deferred({self.label!r}, inputs={len(self._inputs)})"


class Materializer:
    """Evaluates Deferred graphs on a thread pool and hands back futures."""

    def __init__(self, max_workers: int = 4):
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="materialize"
        )

    def materialize(self, expr: Deferred) -> concurrent.futures.Future:
        logger.debug(f"Materializing {expr.label}")
        return self._executor.submit(expr.evaluate)

    def gather(self, *exprs: Deferred) -> List[Any]:
        """Materialize independent graphs concurrently and wait for all results.

        The first exception raised by any graph is re-raised after every
        future has completed.
        """
        futures = [self.materialize(e) for e in exprs]
        concurrent.futures.wait(futures)
        return [f.result() for f in futures]

    def close(self):
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
