"""
Shared test fixtures.

- cache_fixtures: ``FakeAsyncRedis`` and ``FakeClock`` doubles
- store_fixtures: tenant identifiers, in-memory store seeding, Motor doubles
"""

from tests.fixtures.cache_fixtures import FakeAsyncRedis, FakeClock, FakePipeline
from tests.fixtures.store_fixtures import (
    ORG_1,
    ORG_7,
    PROJECT_1,
    PROJECT_7,
    AsyncCursor,
    make_collection,
    make_motor_database,
    seed_role_store,
    write_result,
)

__all__ = [
    'ORG_1',
    'ORG_7',
    'PROJECT_1',
    'PROJECT_7',
    'AsyncCursor',
    'FakeAsyncRedis',
    'FakeClock',
    'FakePipeline',
    'make_collection',
    'make_motor_database',
    'seed_role_store',
    'write_result',
]
