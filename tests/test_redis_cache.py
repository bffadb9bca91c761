"""Login lockout counters against a live Redis; skipped when none is running."""

import os
import uuid

import pytest
from redis.exceptions import RedisError

from fitos_auth.storage.redis_cache import RedisCache, SyncRedisCache

REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/1")


@pytest.fixture
def cache():
    cache = SyncRedisCache(REDIS_URL, socket_timeout=0.5)
    try:
        cache.verify_connection()
    except RedisError:
        pytest.skip("redis not available")
    return cache


@pytest.fixture
def subject():
    return f"test-{uuid.uuid4()}"


def test_keys_are_namespaced():
    assert RedisCache._keys("10.0.0.1") == (
        "auth:login:lockout:10.0.0.1",
        "auth:login:attempts:10.0.0.1",
    )


async def test_lockout_after_threshold(cache, subject):
    assert await cache.record_login_failure(subject, 3, 60) == (False, 1)
    assert await cache.record_login_failure(subject, 3, 60) == (False, 2)
    assert await cache.record_login_failure(subject, 3, 60) == (True, 3)

    assert await cache.check_login_lockout(subject)
    assert await cache.record_login_failure(subject, 3, 60) == (True, -1)


async def test_clear_resets_the_count(cache, subject):
    await cache.record_login_failure(subject, 3, 60)
    await cache.record_login_failure(subject, 3, 60)
    await cache.clear_login_attempts(subject)

    assert await cache.record_login_failure(subject, 3, 60) == (False, 1)
    assert not await cache.check_login_lockout(subject)
