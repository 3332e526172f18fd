from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from wallet_ledger import rate_limit
from wallet_ledger.exceptions import RateLimitError
from wallet_ledger.rate_limit import WebhookRateLimiter


@pytest.mark.asyncio
async def test_in_memory_window_per_source():
    limiter = WebhookRateLimiter(max_requests=3, window_seconds=60)

    for _ in range(3):
        await limiter.check("10.0.0.1")
    with pytest.raises(RateLimitError):
        await limiter.check("10.0.0.1")

    await limiter.check("10.0.0.2")


@pytest.mark.asyncio
async def test_redis_fixed_window():
    redis = AsyncMock()
    redis.incr.side_effect = [1, 2, 3]
    limiter = WebhookRateLimiter(max_requests=2, window_seconds=30, redis=redis)

    await limiter.check("10.0.0.1")
    await limiter.check("10.0.0.1")
    with pytest.raises(RateLimitError):
        await limiter.check("10.0.0.1")

    redis.expire.assert_awaited_once_with("ratelimit:webhook:10.0.0.1", 30)


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_local_window():
    redis = AsyncMock()
    redis.incr.side_effect = ConnectionError("redis down")
    limiter = WebhookRateLimiter(max_requests=1, window_seconds=60, redis=redis)

    await limiter.check("10.0.0.1")
    with pytest.raises(RateLimitError):
        await limiter.check("10.0.0.1")


@pytest.mark.asyncio
async def test_zero_limit_disables_checks():
    limiter = WebhookRateLimiter(max_requests=0, window_seconds=60)
    for _ in range(10):
        await limiter.check("10.0.0.1")


@pytest.mark.asyncio
async def test_idle_sources_are_evicted_after_window(monkeypatch):
    clock = {"now": 1000.0}
    monkeypatch.setattr(rate_limit, "time", SimpleNamespace(monotonic=lambda: clock["now"]))
    limiter = WebhookRateLimiter(max_requests=5, window_seconds=60)

    for i in range(500):
        await limiter.check(f"10.0.{i // 256}.{i % 256}")
    assert len(limiter._requests) == 500

    clock["now"] += 61
    await limiter.check("10.9.9.9")

    assert list(limiter._requests) == ["10.9.9.9"]


@pytest.mark.asyncio
async def test_unique_sources_do_not_accumulate():
    limiter = WebhookRateLimiter(max_requests=5, window_seconds=0)

    for i in range(10_000):
        await limiter.check(f"198.51.{i // 256}.{i % 256}")

    assert len(limiter._requests) <= 1
