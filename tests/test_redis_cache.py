from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from trustcore.storage.errors import CacheUnavailable
from trustcore.storage.redis_cache import RedisCache


@pytest.fixture
def redis_cache():
    # from_url is lazy; nothing connects until a command runs
    cache = RedisCache("redis://localhost:6399/0", socket_timeout=0.1, retries=1)
    cache.client = MagicMock()
    return cache


async def test_commands_retry_then_raise_cache_unavailable(redis_cache):
    failing = AsyncMock(side_effect=RedisConnectionError("refused"))
    with pytest.raises(CacheUnavailable):
        await redis_cache._call("ping", failing)
    assert failing.await_count == 2


async def test_transient_failure_recovers(redis_cache):
    flaky = AsyncMock(side_effect=[RedisConnectionError("blip"), "PONG"])
    assert await redis_cache._call("ping", flaky) == "PONG"


async def test_is_revoked_uses_namespaced_key(redis_cache):
    redis_cache.client.exists = AsyncMock(return_value=1)
    assert await redis_cache.is_revoked("session:abc") is True
    redis_cache.client.exists.assert_awaited_once_with("auth:revoked:session:abc")


async def test_set_revoked_writes_marker_and_index(redis_cache):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, 1])
    redis_cache.client.pipeline.return_value = pipe

    await redis_cache.set_revoked("token:verification:h", 90)
    pipe.set.assert_called_once_with("auth:revoked:token:verification:h", "1", ex=90)
    marker, = pipe.zadd.call_args.args[1].keys()
    assert pipe.zadd.call_args.args[0] == "auth:revoked:index"
    assert marker == "auth:revoked:token:verification:h"


async def test_set_revoked_skips_non_positive_ttl(redis_cache):
    await redis_cache.set_revoked("session:gone", 0)
    redis_cache.client.pipeline.assert_not_called()


async def test_incr_window_runs_script(redis_cache):
    redis_cache._fixed_window = AsyncMock(return_value=[3, 1500])
    assert await redis_cache.incr_window("deadbeef", 60) == (3, 1500)
    redis_cache._fixed_window.assert_awaited_once_with(keys=["rate:deadbeef"], args=[60000])


async def test_revoked_count_prunes_expired(redis_cache):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[2, 5])
    redis_cache.client.pipeline.return_value = pipe

    assert await redis_cache.revoked_count() == 5
    assert pipe.zremrangebyscore.call_args.args[:2] == ("auth:revoked:index", "-inf")
