"""Key-value store used for sessions, rate limits, token families and OTP codes.

Two implementations share the ``KeyValueStore`` protocol: ``RedisKeyValueStore``
for deployments and ``MemoryKeyValueStore`` for tests and single-process
development. Every multi-step operation is atomic in both.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .clock import Clock, SystemClock
from .errors import service_unavailable

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, ttl: Optional[int] = None, *, only_if_absent: bool = False
    ) -> bool: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def swap(self, key: str, value: str) -> Optional[str]: ...

    async def update(self, key: str, mutate: Callable[[str], str]) -> Optional[str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr(self, key: str, ttl: int) -> int: ...

    async def sadd(self, key: str, member: str, ttl: Optional[int] = None) -> None: ...

    async def srem(self, key: str, member: str) -> None: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def window_hit(self, key: str, now: float, window: int) -> Tuple[int, float]: ...

    async def window_count(self, key: str, now: float, window: int) -> Tuple[int, Optional[float]]: ...


class MemoryKeyValueStore:
    """In-process store with TTL semantics driven by the injected clock."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._data: dict[str, tuple[object, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def _load(self, key: str) -> object | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._now() + ttl if ttl else None

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._load(key)
            return value if isinstance(value, str) else None

    async def set(
        self, key: str, value: str, ttl: Optional[int] = None, *, only_if_absent: bool = False
    ) -> bool:
        async with self._lock:
            if only_if_absent and self._load(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    async def getdel(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._load(key)
            self._data.pop(key, None)
            return value if isinstance(value, str) else None

    async def swap(self, key: str, value: str) -> Optional[str]:
        async with self._lock:
            old = self._load(key)
            if old is None:
                return None
            self._data[key] = (value, self._data[key][1])
            return old if isinstance(old, str) else None

    async def update(self, key: str, mutate: Callable[[str], str]) -> Optional[str]:
        """Read-modify-write of an existing string key, keeping its expiry."""

        async with self._lock:
            current = self._load(key)
            if not isinstance(current, str):
                return None
            updated = mutate(current)
            self._data[key] = (updated, self._data[key][1])
            return updated

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._load(key) is not None:
                    removed += 1
                self._data.pop(key, None)
            return removed

    async def incr(self, key: str, ttl: int) -> int:
        async with self._lock:
            current = self._load(key)
            if current is None:
                self._data[key] = ("1", self._expiry(ttl))
                return 1
            count = int(current) + 1
            self._data[key] = (str(count), self._data[key][1])
            return count

    async def sadd(self, key: str, member: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            members = self._load(key)
            if not isinstance(members, set):
                members = set()
            members.add(member)
            expires_at = self._expiry(ttl) if ttl else (self._data.get(key, (None, None))[1])
            self._data[key] = (members, expires_at)

    async def srem(self, key: str, member: str) -> None:
        async with self._lock:
            members = self._load(key)
            if isinstance(members, set):
                members.discard(member)

    async def smembers(self, key: str) -> set[str]:
        async with self._lock:
            members = self._load(key)
            return set(members) if isinstance(members, set) else set()

    async def window_hit(self, key: str, now: float, window: int) -> Tuple[int, float]:
        async with self._lock:
            hits = [ts for ts in (self._load(key) or []) if ts > now - window]
            hits.append(now)
            self._data[key] = (hits, now + window)
            return len(hits), min(hits)

    async def window_count(self, key: str, now: float, window: int) -> Tuple[int, Optional[float]]:
        async with self._lock:
            hits = [ts for ts in (self._load(key) or []) if ts > now - window]
            return len(hits), (min(hits) if hits else None)


class RedisKeyValueStore:
    """``redis.asyncio`` implementation; Redis errors become SERVICE_UNAVAILABLE."""

    def __init__(self, client: redis.Redis) -> None:
        self.redis = client

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisKeyValueStore":
        return cls(redis.from_url(url, decode_responses=True, **kwargs))

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("Redis %s falló: %s", operation, exc)
            raise service_unavailable("kv_store", exc) from exc

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.redis.get(key)

    async def set(
        self, key: str, value: str, ttl: Optional[int] = None, *, only_if_absent: bool = False
    ) -> bool:
        async with self._guard("set"):
            result = await self.redis.set(key, value, ex=ttl or None, nx=only_if_absent)
            return bool(result)

    async def getdel(self, key: str) -> Optional[str]:
        async with self._guard("getdel"):
            return await self.redis.getdel(key)

    async def swap(self, key: str, value: str) -> Optional[str]:
        async with self._guard("swap"):
            # XX: never create the key; KEEPTTL: keep the original expiry
            return await self.redis.set(key, value, xx=True, keepttl=True, get=True)

    async def update(self, key: str, mutate: Callable[[str], str]) -> Optional[str]:
        async with self._guard("update"):
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        if current is None:
                            await pipe.unwatch()
                            return None
                        updated = mutate(current)
                        pipe.multi()
                        pipe.set(key, updated, xx=True, keepttl=True)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("Escritura concurrente sobre %s, reintentando", key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard("delete"):
            return await self.redis.delete(*keys)

    async def incr(self, key: str, ttl: int) -> int:
        async with self._guard("incr"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl, nx=True)
                count, _ = await pipe.execute()
            return int(count)

    async def sadd(self, key: str, member: str, ttl: Optional[int] = None) -> None:
        async with self._guard("sadd"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.sadd(key, member)
                if ttl:
                    pipe.expire(key, ttl)
                await pipe.execute()

    async def srem(self, key: str, member: str) -> None:
        async with self._guard("srem"):
            await self.redis.srem(key, member)

    async def smembers(self, key: str) -> set[str]:
        async with self._guard("smembers"):
            return set(await self.redis.smembers(key))

    async def window_hit(self, key: str, now: float, window: int) -> Tuple[int, float]:
        member = f"{now:.6f}:{secrets.token_hex(4)}"
        async with self._guard("window_hit"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - window)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.expire(key, window)
                _, _, count, oldest, _ = await pipe.execute()
            return int(count), float(oldest[0][1]) if oldest else now

    async def window_count(self, key: str, now: float, window: int) -> Tuple[int, Optional[float]]:
        async with self._guard("window_count"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - window)
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                _, count, oldest = await pipe.execute()
            return int(count), (float(oldest[0][1]) if oldest else None)
