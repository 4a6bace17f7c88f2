from __future__ import annotations

import contextlib
import threading
import time
from typing import AsyncIterator, Callable, Dict, Mapping, Optional, Protocol, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from iamauth.logging import get_logger
from iamauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# Companion writes applied in the same atomic step as a compare-and-swap:
# key -> (value, ttl_seconds)
Companions = Mapping[str, Tuple[str, int]]


class KeyValueStore(Protocol):
    """Narrow key-value contract used by the session registry and lockout policy.

    ``ttl_seconds=None`` on :meth:`compare_and_swap` keeps the key's current TTL.
    ``expected=None`` means the key must be absent for the swap to apply.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        companions: Optional[Companions] = None,
    ) -> bool: ...

    async def add_to_index(self, key: str, member: str, ttl_seconds: int) -> None: ...

    async def index_members(self, key: str) -> Set[str]: ...

    async def remove_from_index(self, key: str, *members: str) -> None: ...

    async def close(self) -> None: ...


class RedisKeyValueStore:
    """Redis-backed store; conditional updates run as Lua scripts."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # KEYS[1] is the guarded key, KEYS[2..n] companions.
    # ARGV: has_expected, expected, value, ttl (0 = keep), then value/ttl per companion.
    _CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
  if current ~= ARGV[2] then
    return 0
  end
elseif current then
  return 0
end

local ttl = tonumber(ARGV[4])
if ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[3], 'EX', ttl)
else
  redis.call('SET', KEYS[1], ARGV[3], 'KEEPTTL')
end

for i = 2, #KEYS do
  local base = 5 + (i - 2) * 2
  redis.call('SET', KEYS[i], ARGV[base], 'EX', tonumber(ARGV[base + 1]))
end
return 1
"""

    # Extend only, never shorten, the TTL of an index set
    _INDEX_ADD_SCRIPT = """
redis.call('SADD', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
if redis.call('TTL', KEYS[1]) < ttl then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return 1
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._cas = self.client.register_script(self._CAS_SCRIPT)
        self._index_add = self.client.register_script(self._INDEX_ADD_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.warning(
                "kv_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"redis {operation} failed", detail={"operation": operation}
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._guard("set"):
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        async with self._guard("delete"):
            await self.client.delete(key)

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        companions: Optional[Companions] = None,
    ) -> bool:
        keys = [key]
        args: list = [
            "1" if expected is not None else "0",
            expected or "",
            value,
            max(1, int(ttl_seconds)) if ttl_seconds is not None else 0,
        ]
        for companion_key, (companion_value, companion_ttl) in (companions or {}).items():
            keys.append(companion_key)
            args.extend([companion_value, max(1, int(companion_ttl))])
        async with self._guard("compare_and_swap"):
            result = await self._cas(keys=keys, args=args)
        return bool(int(result))

    async def add_to_index(self, key: str, member: str, ttl_seconds: int) -> None:
        async with self._guard("add_to_index"):
            await self._index_add(keys=[key], args=[member, max(1, int(ttl_seconds))])

    async def index_members(self, key: str) -> Set[str]:
        async with self._guard("index_members"):
            return set(await self.client.smembers(key))

    async def remove_from_index(self, key: str, *members: str) -> None:
        if not members:
            return
        async with self._guard("remove_from_index"):
            await self.client.srem(key, *members)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class MemoryKeyValueStore:
    """In-process store with the same atomicity and lazy TTL expiry as Redis.

    Every operation runs to completion under one lock without awaiting, so a
    compare-and-swap is atomic against both threads and concurrent tasks.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}

    def _live_value(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._values.pop(key, None)
            return None
        return entry

    def _live_set(self, key: str) -> Optional[Tuple[Set[str], float]]:
        entry = self._sets.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._sets.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_value(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._sets.pop(key, None)

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        companions: Optional[Companions] = None,
    ) -> bool:
        with self._lock:
            entry = self._live_value(key)
            current = entry[0] if entry else None
            if current != expected:
                return False
            now = self._clock()
            if ttl_seconds is not None:
                expires = now + max(1, int(ttl_seconds))
            elif entry is not None:
                expires = entry[1]
            else:
                # Absent key with no TTL requested: nothing sensible to keep
                expires = now + 1
            self._values[key] = (value, expires)
            for companion_key, (companion_value, companion_ttl) in (companions or {}).items():
                self._values[companion_key] = (
                    companion_value,
                    now + max(1, int(companion_ttl)),
                )
            return True

    async def add_to_index(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            entry = self._live_set(key)
            members, expires = entry if entry else (set(), 0.0)
            members.add(member)
            self._sets[key] = (members, max(expires, self._clock() + max(1, int(ttl_seconds))))

    async def index_members(self, key: str) -> Set[str]:
        with self._lock:
            entry = self._live_set(key)
            return set(entry[0]) if entry else set()

    async def remove_from_index(self, key: str, *members: str) -> None:
        with self._lock:
            entry = self._live_set(key)
            if entry:
                entry[0].difference_update(members)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()


__all__ = ["KeyValueStore", "RedisKeyValueStore", "MemoryKeyValueStore"]
