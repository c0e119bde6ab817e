"""
Prometheus metrics for authorization decisions and the decision cache.

Collectors are module-level so every engine and cache instance in a process
reports into the same series. ``observe_decision`` is the single place the
engine records an outcome.
"""

import time
from contextlib import contextmanager
from typing import Iterator, Optional

from prometheus_client import Counter, Histogram

authorization_metrics = {
    'decisions_total': Counter(
        'access_control_decisions_total',
        'Authorization decisions by scope and outcome',
        ['scope', 'decision', 'reason']
    ),
    'decision_duration': Histogram(
        'access_control_decision_duration_seconds',
        'Time spent producing an authorization decision',
        ['scope'],
        buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
    ),
    'cache_lookups_total': Counter(
        'access_control_cache_lookups_total',
        'Decision cache lookups by scope and result',
        ['scope', 'result']
    ),
    'cache_invalidations_total': Counter(
        'access_control_cache_invalidations_total',
        'Decision cache invalidations by kind',
        ['kind']
    ),
    'cache_backend_errors_total': Counter(
        'access_control_cache_backend_errors_total',
        'Decision cache backend failures absorbed by the cache',
        ['backend', 'operation']
    ),
    'role_store_failures_total': Counter(
        'access_control_role_store_failures_total',
        'Role store failures that were converted into a deny',
        ['scope']
    ),
}


def observe_decision(scope: str, allowed: bool, reason: Optional[str]) -> None:
    authorization_metrics['decisions_total'].labels(
        scope=scope,
        decision='allow' if allowed else 'deny',
        reason=reason or 'none'
    ).inc()


def observe_cache_lookup(scope: str, hit: bool) -> None:
    authorization_metrics['cache_lookups_total'].labels(
        scope=scope,
        result='hit' if hit else 'miss'
    ).inc()


def observe_invalidation(kind: str) -> None:
    authorization_metrics['cache_invalidations_total'].labels(kind=kind).inc()


def observe_cache_backend_error(backend: str, operation: str) -> None:
    authorization_metrics['cache_backend_errors_total'].labels(
        backend=backend,
        operation=operation
    ).inc()


def observe_store_failure(scope: str) -> None:
    authorization_metrics['role_store_failures_total'].labels(scope=scope).inc()


@contextmanager
def time_decision(scope: str) -> Iterator[None]:
    start_time = time.perf_counter()
    try:
        yield
    finally:
        authorization_metrics['decision_duration'].labels(scope=scope).observe(
            time.perf_counter() - start_time
        )
