"""Per-IP, per-category attempt limiting.

A record is ``(attempts, reset_at)`` keyed by category and client IP. The first
attempt opens a fixed window of ``window_seconds``; once ``attempts`` reaches
the category's maximum, the caller is blocked until ``reset_at``.

``is_rate_limited`` and ``record_attempt`` are separate calls, so two
concurrent requests can both pass the check before either records: the cap is
best effort, not exact. Each increment itself is atomic on the backing store.
With the in-process ``MemoryCache`` every replica keeps its own window, so N
replicas allow up to N times the nominal quota; ``RedisCache`` shares one
window across the deployment.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Dict, Mapping

from hoopcards.logging import get_logger
from hoopcards.storage.common import KeyValueCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    max_attempts: int
    window_seconds: int


RATE_LIMITS: Dict[str, RateLimitRule] = {
    "auth": RateLimitRule(max_attempts=5, window_seconds=15 * 60),
    "search": RateLimitRule(max_attempts=100, window_seconds=60),
    "collections": RateLimitRule(max_attempts=20, window_seconds=60),
    "profile_updates": RateLimitRule(max_attempts=10, window_seconds=60),
    "purchases": RateLimitRule(max_attempts=5, window_seconds=60),
    "trades": RateLimitRule(max_attempts=10, window_seconds=60),
    "sensitive": RateLimitRule(max_attempts=5, window_seconds=15 * 60),
}


class RateLimiter:
    def __init__(
        self,
        cache: KeyValueCache,
        rules: Mapping[str, RateLimitRule] = RATE_LIMITS,
    ) -> None:
        self.cache = cache
        self.rules = dict(rules)
        for category, rule in self.rules.items():
            if rule.max_attempts <= 0 or rule.window_seconds <= 0:
                raise ValueError(f"invalid rate limit rule for {category!r}")

    def rule(self, category: str) -> RateLimitRule:
        try:
            return self.rules[category]
        except KeyError:
            logger.error("rate_limit_unknown_category", category=category)
            raise

    @staticmethod
    def _key(ip: str, category: str) -> str:
        # Hash the IP so header-supplied values cannot inject key delimiters
        digest = hashlib.sha256((ip or "unknown").encode()).hexdigest()[:32]
        return f"rate:{category}:{digest}"

    async def is_rate_limited(self, ip: str, category: str) -> bool:
        rule = self.rule(category)
        attempts, _ = await self.cache.window(self._key(ip, category))
        return attempts >= rule.max_attempts

    async def record_attempt(self, ip: str, category: str) -> int:
        rule = self.rule(category)
        attempts, reset_at = await self.cache.increment_window(
            self._key(ip, category), rule.window_seconds
        )
        if attempts == rule.max_attempts:
            logger.warning(
                "rate_limit_reached",
                category=category,
                ip=ip,
                attempts=attempts,
                reset_at=reset_at,
            )
        return attempts

    async def clear_attempts(self, ip: str, category: str) -> None:
        self.rule(category)
        await self.cache.delete(self._key(ip, category))

    async def hit(self, ip: str, category: str) -> bool:
        """Record one call and report whether it is still within quota.

        Used for categories where every call counts (search, trades) rather than
        only failures. Increment and compare happen on one atomic counter.
        """
        rule = self.rule(category)
        attempts = await self.record_attempt(ip, category)
        return attempts <= rule.max_attempts

    async def retry_after(self, ip: str, category: str) -> int:
        _, reset_at = await self.cache.window(self._key(ip, category))
        if reset_at is None:
            return 0
        return max(int(math.ceil(reset_at - self.cache.now())), 0)
