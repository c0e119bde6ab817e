"""
Global pytest Configuration and Fixture Definitions

Shared fixtures for the access control test suite:

- ``clock``: manually advanced monotonic clock for TTL tests
- ``role_store``: seeded ``InMemoryRoleStore`` (see ``seed_role_store``)
- ``memory_cache``: ``InMemoryDecisionCache`` on the fake clock
- ``engine``: ``AuthorizationEngine`` over the seeded store and memory cache
- ``command_service``: ``MembershipCommandService`` wired to the same engine
- ``fake_redis`` / ``redis_cache``: Redis cache over ``FakeAsyncRedis``
- ``log_output``: structlog events captured during the test

pytest-asyncio runs in auto mode, so async tests and fixtures need no marker.
"""

import pytest
import structlog
from structlog.testing import LogCapture

from access_control.authz.engine import AuthorizationEngine
from access_control.authz.invalidation import AuthorizationCacheInvalidator, MembershipCommandService
from access_control.cache.memory import InMemoryDecisionCache
from access_control.cache.redis_cache import RedisDecisionCache
from access_control.monitoring.logging import AuthorizationAuditLogger, clear_correlation_id
from access_control.store.memory import InMemoryRoleStore
from tests.fixtures import FakeAsyncRedis, FakeClock, seed_role_store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def role_store():
    return await seed_role_store(InMemoryRoleStore())


@pytest.fixture
def memory_cache(clock):
    return InMemoryDecisionCache(default_ttl=120, max_entries=1000, clock=clock)


@pytest.fixture
def engine(role_store, memory_cache):
    return AuthorizationEngine(role_store=role_store, cache=memory_cache, audit_logger=AuthorizationAuditLogger())


@pytest.fixture
def command_service(role_store, engine):
    return MembershipCommandService(role_store, AuthorizationCacheInvalidator(engine))


@pytest.fixture
def fake_redis(clock):
    return FakeAsyncRedis(clock=clock)


@pytest.fixture
def redis_cache(fake_redis, clock):
    return RedisDecisionCache(
        fake_redis,
        default_ttl=120,
        key_prefix='authz-test',
        epoch_ttl=86400,
        retry_interval=300,
        clock=clock
    )


@pytest.fixture
def log_output():
    """Capture structlog events; entries are dicts with ``event`` and ``log_level``."""
    capture = LogCapture()
    old_config = structlog.get_config()
    structlog.configure(processors=[capture], cache_logger_on_first_use=False)
    try:
        yield capture
    finally:
        structlog.configure(**old_config)


@pytest.fixture(autouse=True)
def reset_correlation_id():
    yield
    clear_correlation_id()
