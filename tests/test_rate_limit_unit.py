import pytest

from hoopcards.service.rate_limit import RATE_LIMITS, RateLimiter, RateLimitRule
from hoopcards.storage.memory_cache import SWEEP_INTERVAL_SECONDS, MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def limiter(cache):
    return RateLimiter(cache)


def test_known_categories():
    assert RATE_LIMITS["auth"] == RateLimitRule(max_attempts=5, window_seconds=900)
    assert RATE_LIMITS["search"] == RateLimitRule(max_attempts=100, window_seconds=60)
    assert RATE_LIMITS["sensitive"].max_attempts == 5
    assert {"collections", "profile_updates", "purchases", "trades"} <= set(RATE_LIMITS)


def test_invalid_rule_rejected(cache):
    with pytest.raises(ValueError):
        RateLimiter(cache, {"broken": RateLimitRule(max_attempts=0, window_seconds=60)})


async def test_blocks_after_max_attempts(limiter):
    for expected in range(1, 6):
        assert not await limiter.is_rate_limited("10.0.0.1", "auth")
        assert await limiter.record_attempt("10.0.0.1", "auth") == expected
    assert await limiter.is_rate_limited("10.0.0.1", "auth")


async def test_window_resets_after_expiry(limiter, clock):
    for _ in range(5):
        await limiter.record_attempt("10.0.0.1", "auth")
    assert await limiter.is_rate_limited("10.0.0.1", "auth")

    clock.advance(15 * 60 - 1)
    assert await limiter.is_rate_limited("10.0.0.1", "auth")
    clock.advance(1)
    assert not await limiter.is_rate_limited("10.0.0.1", "auth")
    assert await limiter.record_attempt("10.0.0.1", "auth") == 1


async def test_window_is_fixed_from_first_attempt(limiter, clock):
    await limiter.record_attempt("10.0.0.1", "search")
    clock.advance(50)
    await limiter.record_attempt("10.0.0.1", "search")
    clock.advance(10)
    # 60 seconds after the first attempt the whole window is gone
    assert await limiter.record_attempt("10.0.0.1", "search") == 1


async def test_ips_and_categories_are_isolated(limiter):
    for _ in range(5):
        await limiter.record_attempt("10.0.0.1", "auth")
    assert await limiter.is_rate_limited("10.0.0.1", "auth")
    assert not await limiter.is_rate_limited("10.0.0.2", "auth")
    assert not await limiter.is_rate_limited("10.0.0.1", "sensitive")


async def test_clear_attempts(limiter):
    for _ in range(5):
        await limiter.record_attempt("10.0.0.1", "auth")
    await limiter.clear_attempts("10.0.0.1", "auth")
    assert not await limiter.is_rate_limited("10.0.0.1", "auth")


async def test_hit_counts_every_call(limiter):
    results = [await limiter.hit("10.0.0.1", "purchases") for _ in range(6)]
    assert results == [True] * 5 + [False]


async def test_retry_after(limiter, clock):
    assert await limiter.retry_after("10.0.0.1", "auth") == 0
    await limiter.record_attempt("10.0.0.1", "auth")
    clock.advance(60)
    assert await limiter.retry_after("10.0.0.1", "auth") == 15 * 60 - 60


async def test_unknown_category_raises(limiter):
    with pytest.raises(KeyError):
        await limiter.record_attempt("10.0.0.1", "nope")


async def test_delimiters_in_ip_do_not_collide(limiter):
    for _ in range(5):
        await limiter.record_attempt("1.1.1.1:auth", "auth")
    assert not await limiter.is_rate_limited("1.1.1.1", "auth")


async def test_expired_windows_are_swept_without_being_read(limiter, cache, clock):
    for last_octet in range(20):
        await limiter.record_attempt(f"10.0.0.{last_octet}", "search")
    assert len(cache._values) == 20

    clock.advance(SWEEP_INTERVAL_SECONDS + 1)
    await limiter.record_attempt("10.0.1.1", "search")
    assert list(cache._values) == [limiter._key("10.0.1.1", "search")]
