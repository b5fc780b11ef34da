from __future__ import annotations

from typing import Optional, Protocol, Tuple


class KeyValueCache(Protocol):
    """Shared ephemeral state: rate-limit windows, denylists, one-time tokens.

    Implemented by ``MemoryCache`` (single process, tests) and ``RedisCache``
    (shared across replicas).
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def increment_window(self, key: str, window_seconds: int) -> Tuple[int, float]: ...

    async def window(self, key: str) -> Tuple[int, Optional[float]]: ...

    def now(self) -> float: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...
