"""Property-based tests for per-tenant rate limiting.

Exactly ``max_requests`` requests are admitted per tenant per window,
tenants never share a budget, and an unavailable store admits requests.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st
from redis.exceptions import ConnectionError as RedisConnectionError

from clinic_saas.modules.tenant.rate_limiter import (
    InMemoryRateLimitStore,
    RedisRateLimitStore,
    TenantRateLimiter,
    build_rate_limiter,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(max_requests: int, window: int, clock: FakeClock) -> TenantRateLimiter:
    return TenantRateLimiter(
        InMemoryRateLimitStore(clock=clock), max_requests, window, clock=clock
    )


async def _hits(limiter: TenantRateLimiter, tenant_id: str, count: int):
    return [await limiter.hit(tenant_id) for _ in range(count)]


class TestInMemoryLimiter:
    """Fixed-window counting against process memory."""

    @given(
        max_requests=st.integers(min_value=1, max_value=50),
        extra=st.integers(min_value=0, max_value=20),
    )
    @settings(max_examples=100)
    def test_admits_exactly_max_requests(self, max_requests: int, extra: int) -> None:
        clock = FakeClock()
        limiter = _limiter(max_requests, 60, clock)

        decisions = asyncio.run(_hits(limiter, "tenant-a", max_requests + extra))

        allowed = [d for d in decisions if d.allowed]
        assert len(allowed) == max_requests, (
            f"Expected {max_requests} admitted, got {len(allowed)}"
        )
        assert all(d.allowed for d in decisions[:max_requests]), "Admissions come first"
        for decision in decisions[max_requests:]:
            assert decision.remaining == 0
            assert decision.retry_after >= 1

    @given(
        max_requests=st.integers(min_value=1, max_value=20),
        tenants=st.lists(
            st.text(alphabet="abcdef0123456789", min_size=4, max_size=8),
            min_size=2,
            max_size=5,
            unique=True,
        ),
    )
    @settings(max_examples=100)
    def test_tenants_are_isolated(self, max_requests: int, tenants: list[str]) -> None:
        clock = FakeClock()
        limiter = _limiter(max_requests, 60, clock)

        async def run():
            # Exhaust the first tenant, then every other tenant still gets a full budget
            await _hits(limiter, tenants[0], max_requests * 3)
            return {t: await _hits(limiter, t, max_requests) for t in tenants[1:]}

        for tenant, decisions in asyncio.run(run()).items():
            assert all(d.allowed for d in decisions), f"{tenant} was throttled by another tenant"

    @given(concurrency=st.integers(min_value=2, max_value=40))
    @settings(max_examples=50)
    def test_concurrent_hits_never_over_admit(self, concurrency: int) -> None:
        clock = FakeClock()
        limiter = _limiter(10, 60, clock)

        async def run():
            return await asyncio.gather(*(limiter.hit("tenant-a") for _ in range(concurrency)))

        decisions = asyncio.run(run())

        assert sum(1 for d in decisions if d.allowed) == min(10, concurrency)

    def test_new_window_resets_budget(self) -> None:
        clock = FakeClock(1_000_040.0)
        limiter = _limiter(2, 60, clock)

        first = asyncio.run(_hits(limiter, "tenant-a", 3))
        clock.now += 60
        second = asyncio.run(_hits(limiter, "tenant-a", 2))

        assert [d.allowed for d in first] == [True, True, False]
        assert all(d.allowed for d in second)

    def test_decision_headers_and_reset(self) -> None:
        clock = FakeClock(1_000_040.0)
        limiter = _limiter(1, 60, clock)

        admitted, rejected = asyncio.run(_hits(limiter, "tenant-a", 2))

        # 1_000_040 falls in the window [1_000_020, 1_000_080)
        assert admitted.reset_at == 1_000_080
        assert admitted.headers() == {
            "X-RateLimit-Limit": "1",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1000080",
        }
        error = rejected.to_error()
        assert error.status_code == 429
        assert error.headers()["Retry-After"] == "40"

    def test_expired_windows_are_evicted(self) -> None:
        clock = FakeClock()
        store = InMemoryRateLimitStore(sweep_interval=1, clock=clock)
        limiter = TenantRateLimiter(store, 5, 60, clock=clock)

        asyncio.run(_hits(limiter, "tenant-a", 1))
        asyncio.run(_hits(limiter, "tenant-b", 1))
        clock.now += 120
        asyncio.run(_hits(limiter, "tenant-c", 1))

        assert len(store) == 1

    def test_full_store_drops_earliest_live_windows(self) -> None:
        clock = FakeClock()
        store = InMemoryRateLimitStore(sweep_interval=10_000, max_keys=10, clock=clock)

        async def fill():
            sizes = []
            for i in range(25):
                await store.increment(f"tenant-{i}", clock.now + 60 + i)
                sizes.append(len(store))
            again = await store.increment("tenant-24", clock.now + 84)
            return sizes, again

        sizes, again = asyncio.run(fill())

        assert max(sizes) == 10
        assert again == 2
        assert "tenant-24" in store._counts
        assert "tenant-0" not in store._counts

    def test_invalid_configuration(self) -> None:
        with pytest.raises(ValueError):
            TenantRateLimiter(InMemoryRateLimitStore(), 0, 60)
        with pytest.raises(ValueError):
            build_rate_limiter("memcached", 10, 60)
        with pytest.raises(ValueError):
            build_rate_limiter("redis", 10, 60)


def _redis_client(execute: AsyncMock) -> MagicMock:
    pipe = MagicMock()
    pipe.execute = execute
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client


class TestRedisLimiter:
    """Shared counters in Redis."""

    @pytest.mark.asyncio
    async def test_counts_from_redis(self):
        client = _redis_client(AsyncMock(side_effect=[[1, True], [2, True], [3, True]]))
        clock = FakeClock(1_000_040.0)
        limiter = TenantRateLimiter(RedisRateLimitStore(client), 2, 60, clock=clock)

        decisions = [await limiter.hit("tenant-a") for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, False]
        pipe = client.pipeline.return_value
        pipe.incr.assert_called_with("ratelimit:tenant-a:16667")
        pipe.expireat.assert_called_with("ratelimit:tenant-a:16667", 1_000_080)

    @pytest.mark.asyncio
    async def test_store_failure_admits(self):
        client = _redis_client(AsyncMock(side_effect=RedisConnectionError("down")))
        limiter = TenantRateLimiter(RedisRateLimitStore(client), 1, 60)

        decisions = [await limiter.hit("tenant-a") for _ in range(5)]

        assert all(d.allowed for d in decisions), "An unavailable store must fail open"

    def test_build_redis_limiter(self):
        client = _redis_client(AsyncMock())

        limiter = build_rate_limiter("redis", 10, 60, redis_client=client)

        assert isinstance(limiter.store, RedisRateLimitStore)
        assert limiter.store.client is client
