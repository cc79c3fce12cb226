from __future__ import annotations

import redis.asyncio as redis
from redis.exceptions import RedisError

from tutor_rag_core.errors import BackendUnavailable

# Conditional increment: only bump the counter while it is below the limit, and start the
# expiry clock on the first hit of a window. Returns {allowed, count}.
_INCR_IF_BELOW = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
  return {0, current}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return {1, current}
"""


class RedisBackend:
    """
    Counter/cache store over redis.asyncio. Every redis failure is surfaced as
    `BackendUnavailable` so callers can fail open.
    """

    def __init__(self, client: redis.Redis):
        self._client = client
        self._incr_if_below = client.register_script(_INCR_IF_BELOW)

    @classmethod
    def from_url(cls, url: str, *, timeout_s: float = 0.5) -> RedisBackend:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
        )
        return cls(client)

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise BackendUnavailable(f"redis get failed: {e}") from e

    async def set(self, key: str, value: str, *, ttl_s: int | None = None) -> None:
        try:
            if ttl_s:
                await self._client.setex(key, ttl_s, value)
            else:
                await self._client.set(key, value)
        except RedisError as e:
            raise BackendUnavailable(f"redis set failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise BackendUnavailable(f"redis delete failed: {e}") from e

    async def incr(self, key: str, amount: int = 1, *, ttl_s: int | None = None) -> int:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                result = await pipe.execute()
            return int(result[0])
        except RedisError as e:
            raise BackendUnavailable(f"redis incr failed: {e}") from e

    async def incr_float(self, key: str, amount: float, *, ttl_s: int | None = None) -> float:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incrbyfloat(key, amount)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                result = await pipe.execute()
            return float(result[0])
        except RedisError as e:
            raise BackendUnavailable(f"redis incrbyfloat failed: {e}") from e

    async def incr_if_below(self, key: str, *, limit: int, ttl_s: int) -> tuple[bool, int]:
        try:
            allowed, count = await self._incr_if_below(keys=[key], args=[limit, ttl_s])
        except RedisError as e:
            raise BackendUnavailable(f"redis rate script failed: {e}") from e
        return bool(int(allowed)), int(count)

    async def close(self) -> None:
        await self._client.aclose()
