"""
Process-local decision cache.

All state sits behind one ``threading.Lock``. Operations are synchronous
inside their coroutine bodies, so the lock is never held across an
``await`` and the cache is safe both for many coroutines on one loop and for
worker threads sharing the instance.

Invalidations draw from one increasing sequence. An entry stays valid while
no invalidation of its resource, subject or exact key carries a later
sequence number, and a stamp is the sequence observed before the role store
read. Invalidation records are kept for ``epoch_retention`` seconds (never
less than the longest TTL written). By then every entry written before the
invalidation has expired. A stamp taken before a forgotten invalidation is
rejected, so in-flight writes stay safe after the record is gone.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

import structlog

from access_control.authz.roles import Scope
from access_control.cache.base import (
    CachedValue,
    CacheStamp,
    DecisionCache,
    ResourceId,
    normalize_key,
)
from access_control.monitoring.metrics import observe_invalidation

logger = structlog.get_logger(__name__)

_EntryKey = Tuple[str, str, str]


@dataclass
class _Entry:
    value: Any
    expires_at: float
    sequence: int


@dataclass
class _Invalidation:
    sequence: int
    at: float


class InMemoryDecisionCache(DecisionCache):
    """
    Bounded in-memory decision cache.

    Args:
        default_ttl: Entry lifetime in seconds
        max_entries: Upper bound on stored entries; the oldest write is evicted
        clock: Monotonic time source (injectable for tests)
        epoch_retention: Seconds an invalidation record is kept; defaults to
            twice ``default_ttl``
    """

    backend_name = 'memory'

    def __init__(
        self,
        default_ttl: float = 120,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
        epoch_retention: Optional[float] = None
    ):
        super().__init__(default_ttl)
        self.max_entries = max_entries
        self.epoch_retention = 2 * default_ttl if epoch_retention is None else epoch_retention
        self._clock = clock
        self._lock = Lock()
        self._entries: "OrderedDict[_EntryKey, _Entry]" = OrderedDict()
        self._sequence = 0
        self._forgotten_through = 0
        self._longest_ttl = default_ttl
        # Each map is ordered by sequence; a repeated invalidation moves its key to the end.
        self._resource_invalidations: "OrderedDict[Tuple[str, str], _Invalidation]" = OrderedDict()
        self._subject_invalidations: "OrderedDict[str, _Invalidation]" = OrderedDict()
        self._entry_invalidations: "OrderedDict[_EntryKey, _Invalidation]" = OrderedDict()

    def _last_invalidation(self, key: _EntryKey) -> int:
        scope, resource_id, subject = key
        latest = 0
        for invalidations, invalidation_key in (
            (self._resource_invalidations, (scope, resource_id)),
            (self._subject_invalidations, subject),
            (self._entry_invalidations, key),
        ):
            invalidation = invalidations.get(invalidation_key)
            if invalidation is not None and invalidation.sequence > latest:
                latest = invalidation.sequence
        return latest

    def _is_live(self, key: _EntryKey, entry: _Entry, now: float) -> bool:
        return entry.expires_at > now and entry.sequence >= self._last_invalidation(key)

    def _record_invalidation(self, invalidations: "OrderedDict[Any, _Invalidation]", key: Hashable) -> None:
        now = self._clock()
        self._sequence += 1
        invalidations.pop(key, None)
        invalidations[key] = _Invalidation(sequence=self._sequence, at=now)
        self._forget_invalidations(now)

    def _forget_invalidations(self, now: float) -> int:
        horizon = now - max(self.epoch_retention, self._longest_ttl)
        forgotten = 0
        for invalidations in (
            self._resource_invalidations,
            self._subject_invalidations,
            self._entry_invalidations,
        ):
            while invalidations:
                oldest = next(iter(invalidations.values()))
                if oldest.at > horizon:
                    break
                invalidations.popitem(last=False)
                self._forgotten_through = max(self._forgotten_through, oldest.sequence)
                forgotten += 1
        return forgotten

    async def get(self, scope: Scope, subject: str, resource_id: ResourceId) -> Optional[CachedValue]:
        key = normalize_key(scope, subject, resource_id)
        result = None
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if self._is_live(key, entry, self._clock()):
                    result = CachedValue(entry.value)
                else:
                    del self._entries[key]

        self.statistics.record(scope, hit=result is not None)
        return result

    async def stamp(self, scope: Scope, subject: str, resource_id: ResourceId) -> CacheStamp:
        with self._lock:
            return (self._sequence,)

    async def set(
        self,
        scope: Scope,
        subject: str,
        resource_id: ResourceId,
        value: Any,
        ttl: Optional[float] = None,
        stamp: Optional[CacheStamp] = None
    ) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return

        key = normalize_key(scope, subject, resource_id)
        with self._lock:
            if stamp is None:
                sequence = self._sequence
            else:
                sequence = stamp[0]
                if sequence < self._last_invalidation(key) or sequence < self._forgotten_through:
                    logger.debug(
                        "Discarding decision cache write invalidated in flight",
                        scope=scope.value,
                        subject=subject,
                        resource_id=key[1]
                    )
                    return

            self._longest_ttl = max(self._longest_ttl, ttl)
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl, sequence=sequence)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def invalidate_exact(self, scope: Scope, subject: str, resource_id: ResourceId) -> None:
        key = normalize_key(scope, subject, resource_id)
        with self._lock:
            self._record_invalidation(self._entry_invalidations, key)
            self._entries.pop(key, None)
        observe_invalidation('exact')

    async def invalidate_resource(self, scope: Scope, resource_id: ResourceId) -> None:
        scope_name, resource, _ = normalize_key(scope, '', resource_id)
        with self._lock:
            self._record_invalidation(self._resource_invalidations, (scope_name, resource))
        observe_invalidation('resource')

    async def invalidate_subject_global(self, subject: str) -> None:
        with self._lock:
            self._record_invalidation(self._subject_invalidations, subject)
        observe_invalidation('subject')

    def purge_expired(self) -> int:
        """Remove expired and invalidated entries and forget old invalidations; returns entries removed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if not self._is_live(key, entry, now)]
            for key in stale:
                del self._entries[key]
            forgotten = self._forget_invalidations(now)
        if stale or forgotten:
            logger.debug("Decision cache purged", entries=len(stale), invalidations=forgotten)
        return len(stale)

    @property
    def tracked_invalidations(self) -> int:
        with self._lock:
            return (
                len(self._resource_invalidations)
                + len(self._subject_invalidations)
                + len(self._entry_invalidations)
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def health_check(self) -> Dict[str, Any]:
        return {
            'status': 'healthy',
            'backend': self.backend_name,
            'entries': len(self),
            'max_entries': self.max_entries,
            'tracked_invalidations': self.tracked_invalidations,
        }
