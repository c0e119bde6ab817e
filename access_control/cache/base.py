"""
Decision cache contract.

A decision cache maps ``(scope, subject, resource_id)`` to a cached role or
decision for a short TTL. Every key belongs to three invalidation epochs:

- the resource epoch ``(scope, resource_id)``, bumped by resource deletion
- the subject epoch, bumped when a subject's grants change broadly
- the exact-entry epoch, bumped by a membership change

Readers take a ``stamp`` (an opaque token for the current epochs) before
querying the role store and hand it back to ``set``. A write whose stamp
predates a later invalidation is never served, so an in-flight decision
cannot republish a role that was invalidated while it was running.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union
from uuid import UUID

from access_control.authz.roles import Scope
from access_control.monitoring.metrics import observe_cache_lookup

CacheStamp = Tuple[int, ...]

# Stamp returned when the epochs could not be read; never equal to a real one.
UNKNOWN_STAMP: CacheStamp = (-1, -1, -1)

ResourceId = Union[UUID, str]


@dataclass(frozen=True)
class CachedValue:
    """Wrapper that lets a cached ``None`` (no role) differ from a miss."""

    value: Any


class CacheKeyPatterns:
    """Key layout for external cache backends."""

    ENTRY = "{prefix}:entry:{scope}:{resource_id}:{subject}"
    RESOURCE_EPOCH = "{prefix}:epoch:resource:{scope}:{resource_id}"
    SUBJECT_EPOCH = "{prefix}:epoch:subject:{subject}"
    ENTRY_EPOCH = "{prefix}:epoch:entry:{scope}:{resource_id}:{subject}"


def format_cache_key(pattern: str, **kwargs: Any) -> str:
    return pattern.format(**kwargs)


def normalize_key(scope: Scope, subject: str, resource_id: ResourceId) -> Tuple[str, str, str]:
    """Canonical ``(scope, resource_id, subject)`` strings for a cache key."""
    return scope.value, str(resource_id).lower(), subject


class CacheStatistics:
    """Hit/miss counters per scope, mirrored into Prometheus."""

    def __init__(self):
        self._lock = threading.Lock()
        self._hits: Dict[str, int] = {}
        self._misses: Dict[str, int] = {}

    def record(self, scope: Scope, hit: bool) -> None:
        with self._lock:
            counts = self._hits if hit else self._misses
            counts[scope.value] = counts.get(scope.value, 0) + 1
        observe_cache_lookup(scope.value, hit)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            scopes = set(self._hits) | set(self._misses)
            stats = {}
            for scope in sorted(scopes):
                hits = self._hits.get(scope, 0)
                misses = self._misses.get(scope, 0)
                total = hits + misses
                stats[scope] = {
                    'hits': hits,
                    'misses': misses,
                    'hit_ratio': hits / total if total else 0.0,
                }
            return stats


class DecisionCache(ABC):
    """
    Time-bound cache of roles and decisions keyed by scope, subject and resource.

    Implementations must be safe for unbounded concurrent readers and writers
    and must never hold a lock across an ``await``.
    """

    backend_name = 'abstract'

    def __init__(self, default_ttl: float = 120):
        self.default_ttl = default_ttl
        self.statistics = CacheStatistics()

    @abstractmethod
    async def get(self, scope: Scope, subject: str, resource_id: ResourceId) -> Optional[CachedValue]:
        """Return the cached value, or None on a miss, expiry or invalidation."""

    @abstractmethod
    async def stamp(self, scope: Scope, subject: str, resource_id: ResourceId) -> CacheStamp:
        """Return the current invalidation epochs for the key."""

    @abstractmethod
    async def set(
        self,
        scope: Scope,
        subject: str,
        resource_id: ResourceId,
        value: Any,
        ttl: Optional[float] = None,
        stamp: Optional[CacheStamp] = None
    ) -> None:
        """Store ``value``; a ``stamp`` older than the current epochs discards the write."""

    @abstractmethod
    async def invalidate_exact(self, scope: Scope, subject: str, resource_id: ResourceId) -> None:
        """Drop one subject's entry for one resource."""

    @abstractmethod
    async def invalidate_resource(self, scope: Scope, resource_id: ResourceId) -> None:
        """Drop every subject's entry for one resource."""

    @abstractmethod
    async def invalidate_subject_global(self, subject: str) -> None:
        """Drop every entry of one subject across all scopes and resources."""

    async def health_check(self) -> Dict[str, Any]:
        return {'status': 'healthy', 'backend': self.backend_name}

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'backend': self.backend_name,
            'default_ttl': self.default_ttl,
            'lookups': self.statistics.snapshot(),
        }

    async def close(self) -> None:
        return None


class NullDecisionCache(DecisionCache):
    """Caching disabled: every lookup misses and writes are dropped."""

    backend_name = 'none'

    async def get(self, scope, subject, resource_id):
        self.statistics.record(scope, hit=False)
        return None

    async def stamp(self, scope, subject, resource_id):
        return (0, 0, 0)

    async def set(self, scope, subject, resource_id, value, ttl=None, stamp=None):
        return None

    async def invalidate_exact(self, scope, subject, resource_id):
        return None

    async def invalidate_resource(self, scope, resource_id):
        return None

    async def invalidate_subject_global(self, subject):
        return None
