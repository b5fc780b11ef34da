from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

SWEEP_INTERVAL_SECONDS = 60


class MemoryCache:
    """Process-local key-value store with per-key TTL.

    Mirrors the async surface of :class:`hoopcards.storage.redis_cache.RedisCache`
    so services can be handed either one. State lives in this process only: with
    N replicas every replica keeps its own counters.

    The lock is a plain thread lock and is never held across an ``await``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + SWEEP_INTERVAL_SECONDS

    def _alive(self, key: str, now: float) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            self._values.pop(key, None)
            return None
        return entry

    def _sweep(self, now: float) -> None:
        """Drop every expired entry, at most once per sweep interval."""
        if now < self._next_sweep:
            return
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS
        expired = [
            key
            for key, (_, expires_at) in self._values.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._values[key]

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._alive(key, self._clock())
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            expires_at = now + ttl_seconds if ttl_seconds else None
            self._values[key] = (str(value), expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._alive(key, self._clock()) is not None

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._alive(key, self._clock())
            self._values.pop(key, None)
            return entry[0] if entry else None

    async def increment_window(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Increment ``key`` and return ``(count, reset_at)``.

        The first hit of a window fixes ``reset_at = now + window_seconds``; later
        hits inside the window keep it. Read and increment happen under one lock
        acquisition so concurrent callers in this process never lose an update.
        """
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._alive(key, now)
            if entry is None:
                reset_at = now + window_seconds
                self._values[key] = ("1", reset_at)
                return 1, reset_at
            count = int(entry[0]) + 1
            reset_at = entry[1] if entry[1] is not None else now + window_seconds
            self._values[key] = (str(count), reset_at)
            return count, reset_at

    async def window(self, key: str) -> Tuple[int, Optional[float]]:
        """Current ``(count, reset_at)`` for a counter, ``(0, None)`` when absent."""
        with self._lock:
            entry = self._alive(key, self._clock())
            if entry is None:
                return 0, None
            return int(entry[0]), entry[1]

    def now(self) -> float:
        return self._clock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
