"""
Redis-backed decision cache.

Shares cached roles and decisions across worker processes. Entries are JSON
documents ``{"v": value, "s": stamp}`` stored with ``EX ttl``; the three
invalidation epochs are plain integer counters bumped with ``INCR``. A read
fetches the entry and its epochs in one ``MGET`` and treats an entry whose
stamp no longer matches as a miss.

The backend is fail-soft: a Redis error marks it unavailable for
``retry_interval`` seconds. While unavailable, reads miss and writes are
skipped so decisions fall back to the role store. Invalidations are always
attempted; a failed invalidation is logged at error level.

`redis.asyncio` connections belong to the event loop that opened them. With
a ``client_factory`` the cache keeps one client per running loop, so a Flask
app that runs each async view on a fresh loop never reuses a connection from
a closed one.
"""

import asyncio
import json
import math
import time
import weakref
from contextlib import asynccontextmanager
from threading import Lock
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog
from redis.exceptions import RedisError

from access_control.authz.roles import Scope
from access_control.cache.base import (
    UNKNOWN_STAMP,
    CachedValue,
    CacheKeyPatterns,
    CacheStamp,
    DecisionCache,
    ResourceId,
    format_cache_key,
    normalize_key,
)
from access_control.monitoring.metrics import observe_cache_backend_error, observe_invalidation

logger = structlog.get_logger(__name__)

# RuntimeError covers connections used outside the loop that created them.
_BACKEND_ERRORS = (RedisError, OSError, RuntimeError)


def _decode(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        return raw.decode('utf-8')
    return str(raw)


def _epoch(raw: Any) -> int:
    text = _decode(raw)
    if not text:
        return 0
    try:
        return int(text)
    except ValueError:
        return -1


class RedisDecisionCache(DecisionCache):
    """
    Decision cache on ``redis.asyncio``.

    Args:
        redis_client: ``redis.asyncio.Redis`` client (bytes or decoded responses);
            with a ``client_factory`` it serves the first loop that uses the cache
        default_ttl: Entry lifetime in seconds
        key_prefix: Namespace for every key written
        epoch_ttl: Lifetime of epoch counters; must exceed ``default_ttl``
        retry_interval: Seconds the cache stays disabled after a Redis error
        clock: Monotonic time source (injectable for tests)
        client_factory: Builds a client for each further event loop
    """

    backend_name = 'redis'

    def __init__(
        self,
        redis_client: Any,
        default_ttl: float = 120,
        key_prefix: str = 'authz',
        epoch_ttl: int = 86400,
        retry_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
        client_factory: Optional[Callable[[], Any]] = None
    ):
        super().__init__(default_ttl)
        self.redis_client = redis_client
        self._client_factory = client_factory
        self._unclaimed_client = redis_client
        self._loop_clients: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Any]" = weakref.WeakKeyDictionary()
        self.key_prefix = key_prefix
        self.epoch_ttl = epoch_ttl
        self.retry_interval = retry_interval
        self._clock = clock
        self._state_lock = Lock()
        self._unavailable_until: Optional[float] = None

    # Clients and availability

    @property
    def client(self) -> Any:
        """Client bound to the running event loop."""
        if self._client_factory is None:
            return self.redis_client
        loop = asyncio.get_running_loop()
        with self._state_lock:
            client = self._loop_clients.get(loop)
            if client is None:
                if self._unclaimed_client is not None:
                    client, self._unclaimed_client = self._unclaimed_client, None
                else:
                    client = self._client_factory()
                    logger.debug("Redis client created for event loop", loops=len(self._loop_clients) + 1)
                self._loop_clients[loop] = client
            return client


    @property
    def available(self) -> bool:
        with self._state_lock:
            if self._unavailable_until is None:
                return True
            if self._clock() >= self._unavailable_until:
                self._unavailable_until = None
                logger.info("Redis decision cache re-enabled", retry_interval=self.retry_interval)
                return True
            return False

    def _mark_unavailable(self, operation: str, error: Exception) -> None:
        with self._state_lock:
            self._unavailable_until = self._clock() + self.retry_interval
        observe_cache_backend_error(self.backend_name, operation)
        logger.warning(
            "Redis decision cache disabled after backend error",
            operation=operation,
            retry_interval=self.retry_interval,
            error=str(error),
            error_type=type(error).__name__
        )

    @asynccontextmanager
    async def _fail_soft(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except _BACKEND_ERRORS as e:
            self._mark_unavailable(operation, e)

    # Keys

    def _keys(self, scope: Scope, subject: str, resource_id: ResourceId) -> List[str]:
        scope_name, resource, subject = normalize_key(scope, subject, resource_id)
        params = {
            'prefix': self.key_prefix,
            'scope': scope_name,
            'resource_id': resource,
            'subject': subject,
        }
        return [
            format_cache_key(CacheKeyPatterns.ENTRY, **params),
            format_cache_key(CacheKeyPatterns.RESOURCE_EPOCH, **params),
            format_cache_key(CacheKeyPatterns.SUBJECT_EPOCH, **params),
            format_cache_key(CacheKeyPatterns.ENTRY_EPOCH, **params),
        ]

    # Reads and writes

    async def get(self, scope: Scope, subject: str, resource_id: ResourceId) -> Optional[CachedValue]:
        result = None
        if self.available:
            async with self._fail_soft('get'):
                entry_key, *epoch_keys = self._keys(scope, subject, resource_id)
                raw_entry, *raw_epochs = await self.client.mget([entry_key, *epoch_keys])
                result = self._load_entry(raw_entry, tuple(_epoch(raw) for raw in raw_epochs))

        self.statistics.record(scope, hit=result is not None)
        return result

    def _load_entry(self, raw_entry: Any, current: CacheStamp) -> Optional[CachedValue]:
        text = _decode(raw_entry)
        if text is None:
            return None
        try:
            payload = json.loads(text)
            stamp = tuple(payload['s'])
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed decision cache entry")
            return None
        if stamp != current:
            return None
        return CachedValue(payload.get('v'))

    async def stamp(self, scope: Scope, subject: str, resource_id: ResourceId) -> CacheStamp:
        if not self.available:
            return UNKNOWN_STAMP
        async with self._fail_soft('stamp'):
            _, *epoch_keys = self._keys(scope, subject, resource_id)
            raw_epochs = await self.client.mget(epoch_keys)
            return tuple(_epoch(raw) for raw in raw_epochs)
        return UNKNOWN_STAMP

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
        if ttl <= 0 or stamp == UNKNOWN_STAMP or not self.available:
            return

        async with self._fail_soft('set'):
            if stamp is None:
                stamp = await self.stamp(scope, subject, resource_id)
                if stamp == UNKNOWN_STAMP:
                    return
            entry_key = self._keys(scope, subject, resource_id)[0]
            payload = json.dumps({'v': value, 's': list(stamp)})
            await self.client.set(entry_key, payload, ex=max(1, math.ceil(ttl)))

    # Invalidation

    async def _bump(self, kind: str, epoch_key: str, entry_key: Optional[str] = None) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(epoch_key)
                pipe.expire(epoch_key, self.epoch_ttl)
                if entry_key is not None:
                    pipe.delete(entry_key)
                await pipe.execute()
        except _BACKEND_ERRORS as e:
            self._mark_unavailable(f'invalidate_{kind}', e)
            logger.error(
                "Decision cache invalidation failed",
                kind=kind,
                key=epoch_key,
                error=str(e),
                error_type=type(e).__name__
            )
            return
        observe_invalidation(kind)

    async def invalidate_exact(self, scope: Scope, subject: str, resource_id: ResourceId) -> None:
        entry_key, _, _, entry_epoch_key = self._keys(scope, subject, resource_id)
        await self._bump('exact', entry_epoch_key, entry_key)

    async def invalidate_resource(self, scope: Scope, resource_id: ResourceId) -> None:
        resource_epoch_key = self._keys(scope, '', resource_id)[1]
        await self._bump('resource', resource_epoch_key)

    async def invalidate_subject_global(self, subject: str) -> None:
        subject_epoch_key = format_cache_key(
            CacheKeyPatterns.SUBJECT_EPOCH,
            prefix=self.key_prefix,
            subject=subject
        )
        await self._bump('subject', subject_epoch_key)

    # Lifecycle

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.client.ping()
        except _BACKEND_ERRORS as e:
            return {
                'status': 'unhealthy',
                'backend': self.backend_name,
                'error': type(e).__name__,
            }
        return {
            'status': 'healthy' if self.available else 'degraded',
            'backend': self.backend_name,
            'key_prefix': self.key_prefix,
        }

    def get_statistics(self) -> Dict[str, Any]:
        stats = super().get_statistics()
        stats['available'] = self.available
        return stats

    async def close(self) -> None:
        await self.client.aclose()
