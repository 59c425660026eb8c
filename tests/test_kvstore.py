"""Key-value store contract, exercised against the memory and Redis implementations."""
from __future__ import annotations

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bankauth.errors import AuthError, AuthErrorKind
from bankauth.kvstore import RedisKeyValueStore
from bankauth.rate_limiter import RateLimiter


@pytest.fixture()
def store(any_kv):
    return any_kv


async def _ttl(store, key: str) -> int | None:
    if isinstance(store, RedisKeyValueStore):
        return await store.redis.ttl(key)
    return None


async def test_set_only_if_absent_and_getdel(store) -> None:
    assert await store.set("k", "one", ttl=60) is True
    assert await store.set("k", "two", ttl=60, only_if_absent=True) is False
    assert await store.get("k") == "one"

    assert await store.getdel("k") == "one"
    assert await store.getdel("k") is None
    assert await store.get("k") is None


async def test_swap_never_creates_and_keeps_expiry(store) -> None:
    assert await store.swap("missing", "value") is None
    assert await store.get("missing") is None

    await store.set("state", "active", ttl=120)
    assert await store.swap("state", "used") == "active"
    assert await store.swap("state", "used") == "used"
    assert await store.get("state") == "used"
    ttl = await _ttl(store, "state")
    assert ttl is None or 0 < ttl <= 120


async def test_update_merges_into_current_value(store) -> None:
    assert await store.update("missing", lambda raw: raw + "!") is None
    assert await store.get("missing") is None

    await store.set("record", json.dumps({"a": 1, "b": 1}), ttl=300)

    def bump(raw: str) -> str:
        data = json.loads(raw)
        data["b"] += 1
        return json.dumps(data)

    assert json.loads(await store.update("record", bump)) == {"a": 1, "b": 2}
    assert json.loads(await store.get("record")) == {"a": 1, "b": 2}
    ttl = await _ttl(store, "record")
    assert ttl is None or 0 < ttl <= 300


async def test_incr_sets_expiry_only_once(store) -> None:
    assert await store.incr("counter", ttl=100) == 1
    assert await store.incr("counter", ttl=5000) == 2
    assert await store.incr("counter", ttl=5000) == 3
    ttl = await _ttl(store, "counter")
    assert ttl is None or 0 < ttl <= 100


async def test_sets_and_delete(store) -> None:
    await store.sadd("members", "a", ttl=60)
    await store.sadd("members", "b")
    await store.srem("members", "a")
    assert await store.smembers("members") == {"b"}
    assert await store.smembers("nobody") == set()

    await store.set("x", "1")
    assert await store.delete("x", "members", "absent") == 2
    assert await store.delete() == 0


async def test_sliding_window(store, clock) -> None:
    start = clock.now().timestamp()
    for offset in (0, 1, 2):
        count, oldest = await store.window_hit("window", start + offset, 10)
    assert (count, oldest) == (3, start)

    count, oldest = await store.window_count("window", start + 10.5, 10)
    assert (count, oldest) == (2, start + 1)
    assert await store.window_count("empty", start, 10) == (0, None)


async def test_rate_limiter_hit_and_check(store, clock) -> None:
    limiter = RateLimiter(store, clock)
    for _ in range(3):
        assert (await limiter.hit("ip:10.0.0.1", limit=3, window_seconds=60)).allowed is True
    denied = await limiter.hit("ip:10.0.0.1", limit=3, window_seconds=60)
    assert denied.allowed is False
    assert 0 < denied.retry_after_seconds <= 60

    peek = await limiter.check("ip:10.0.0.1", limit=3, window_seconds=60)
    assert peek.allowed is False
    assert (await limiter.check("ip:10.0.0.2", limit=3, window_seconds=60)).allowed is True

    clock.advance(seconds=61)
    assert (await limiter.hit("ip:10.0.0.1", limit=3, window_seconds=60)).allowed is True


async def test_redis_errors_become_service_unavailable() -> None:
    class DownRedis:
        async def get(self, key):
            raise RedisConnectionError("down")

    store = RedisKeyValueStore(DownRedis())
    with pytest.raises(AuthError) as exc:
        await store.get("anything")
    assert exc.value.kind is AuthErrorKind.SERVICE_UNAVAILABLE
