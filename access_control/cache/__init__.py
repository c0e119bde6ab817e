"""
Decision cache package.

``create_decision_cache`` builds the backend named by ``AUTHZ_CACHE_BACKEND``:
``memory`` (process-local), ``redis`` (shared across workers) or ``none``
(caching disabled).
"""

from functools import partial
from typing import Any

import redis.asyncio as redis_asyncio
import structlog

from access_control.authz.exceptions import (
    AccessControlConfigurationError,
    AuthorizationErrorCode,
    CacheBackendError,
)
from access_control.cache.base import (
    UNKNOWN_STAMP,
    CachedValue,
    CacheKeyPatterns,
    CacheStamp,
    DecisionCache,
    NullDecisionCache,
)
from access_control.cache.memory import InMemoryDecisionCache
from access_control.cache.redis_cache import RedisDecisionCache

logger = structlog.get_logger(__name__)

CACHE_BACKENDS = ('memory', 'redis', 'none')


def create_decision_cache(config: Any) -> DecisionCache:
    """
    Build a decision cache from configuration.

    Args:
        config: Configuration class or object exposing the ``AUTHZ_CACHE_*``
            settings and ``AUTHZ_REDIS_URL``

    Returns:
        Configured decision cache

    Raises:
        AccessControlConfigurationError: Unknown backend name
        CacheBackendError: Redis backend selected without a usable URL
    """
    backend = str(getattr(config, 'AUTHZ_CACHE_BACKEND', 'memory')).lower()
    ttl = getattr(config, 'AUTHZ_CACHE_TTL_SECONDS', 120)

    if backend == 'memory':
        cache = InMemoryDecisionCache(
            default_ttl=ttl,
            max_entries=getattr(config, 'AUTHZ_CACHE_MAX_ENTRIES', 10000)
        )
    elif backend == 'redis':
        redis_url = getattr(config, 'AUTHZ_REDIS_URL', None)
        if not redis_url:
            raise CacheBackendError("AUTHZ_REDIS_URL is required for the redis cache backend", backend='redis')

        client_factory = partial(redis_asyncio.from_url, redis_url, decode_responses=True)
        try:
            client = client_factory()
        except ValueError as e:
            raise CacheBackendError(f"Invalid Redis URL: {e}", backend='redis') from e

        cache = RedisDecisionCache(
            client,
            default_ttl=ttl,
            key_prefix=getattr(config, 'AUTHZ_CACHE_KEY_PREFIX', 'authz'),
            epoch_ttl=getattr(config, 'AUTHZ_CACHE_EPOCH_TTL_SECONDS', 86400),
            retry_interval=getattr(config, 'AUTHZ_CACHE_RETRY_INTERVAL_SECONDS', 300),
            client_factory=client_factory
        )
    elif backend == 'none':
        cache = NullDecisionCache(default_ttl=ttl)
    else:
        raise AccessControlConfigurationError(
            f"Unknown decision cache backend: {backend}",
            error_code=AuthorizationErrorCode.CFG_INVALID_CACHE_BACKEND
        )

    logger.info("Decision cache created", backend=cache.backend_name, default_ttl=ttl)
    return cache


__all__ = [
    'CACHE_BACKENDS',
    'UNKNOWN_STAMP',
    'CachedValue',
    'CacheKeyPatterns',
    'CacheStamp',
    'DecisionCache',
    'InMemoryDecisionCache',
    'NullDecisionCache',
    'RedisDecisionCache',
    'create_decision_cache',
]
