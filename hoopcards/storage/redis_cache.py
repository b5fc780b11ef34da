from __future__ import annotations

import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper shared by all replicas for counters and denylists."""

    # Atomic increment-and-expire: the first hit of a window sets the expiry,
    # later hits only increment. Returns {count, remaining_ms}.
    _WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window_ms = tonumber(ARGV[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        namespace: str = "hoopcards",
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(self._WINDOW_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def now(self) -> float:
        return time.time()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.client.set(self._key(key), value, ex=max(int(ttl_seconds), 1))
        else:
            await self.client.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(self._key(key)))

    async def pop(self, key: str) -> Optional[str]:
        """Read and delete in one transaction so single-use tokens stay single use."""
        pipe = self.client.pipeline(transaction=True)
        pipe.get(self._key(key))
        pipe.delete(self._key(key))
        value, _ = await pipe.execute()
        return value

    async def increment_window(self, key: str, window_seconds: int) -> Tuple[int, float]:
        count, ttl_ms = await self._window(
            keys=[self._key(key)], args=[int(window_seconds * 1000)]
        )
        return int(count), time.time() + int(ttl_ms) / 1000.0

    async def window(self, key: str) -> Tuple[int, Optional[float]]:
        pipe = self.client.pipeline(transaction=True)
        pipe.get(self._key(key))
        pipe.pttl(self._key(key))
        raw, ttl_ms = await pipe.execute()
        if raw is None:
            return 0, None
        reset_at = time.time() + int(ttl_ms) / 1000.0 if ttl_ms and ttl_ms > 0 else None
        return int(raw), reset_at

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting the runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
