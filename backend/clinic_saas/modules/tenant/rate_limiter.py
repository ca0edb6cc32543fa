"""Per-tenant request rate limiting.

Fixed-window counters keyed by ``{tenant}:{window index}``. Counting is
delegated to a RateLimitStore so the limiter can run against process memory
(approximate, per instance) or Redis (shared across instances). Hard billing
caps are enforced by the usage meter, never here.
"""

import asyncio
import heapq
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis
from fastapi import Depends, Request, Response
from redis.exceptions import RedisError

from clinic_saas.core.errors import RateLimited
from clinic_saas.core.metrics import (
    RATE_LIMITED_REQUESTS_TOTAL,
    RATE_LIMIT_STORE_ERRORS_TOTAL,
)
from clinic_saas.modules.tenant.resolver import TenantContext, require_tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of counting one request against a tenant's window."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # unix epoch seconds when the window closes
    retry_after: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }

    def to_error(self) -> RateLimited:
        return RateLimited(
            limit=self.limit,
            retry_after=self.retry_after,
            reset_at=self.reset_at,
        )


class RateLimitStore(ABC):
    """Atomic counter storage for rate limit windows."""

    backend: str = "abstract"

    @abstractmethod
    async def increment(self, key: str, expires_at: float) -> Optional[int]:
        """Increment ``key`` and return the new count.

        Returns None when the store is unavailable; the limiter then admits
        the request.
        """


class InMemoryRateLimitStore(RateLimitStore):
    """Mutex-guarded in-process counters with lazy eviction.

    Expired windows are swept every ``sweep_interval`` increments. A new key
    arriving at ``max_keys`` sweeps too, and if nothing had expired the
    earliest-expiring tenth of the windows is dropped to make room.
    """

    backend = "memory"

    def __init__(
        self,
        sweep_interval: int = 1000,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.time,
    ):
        self.sweep_interval = sweep_interval
        self.max_keys = max_keys
        self.clock = clock
        self._counts: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._ops = 0

    async def increment(self, key: str, expires_at: float) -> Optional[int]:
        async with self._lock:
            now = self.clock()
            self._ops += 1
            if self._ops % self.sweep_interval == 0:
                self._evict_expired(now)
            if key not in self._counts and len(self._counts) >= self.max_keys:
                if not self._evict_expired(now):
                    self._evict_oldest(max(1, self.max_keys // 10))

            count, current_expiry = self._counts.get(key, (0, expires_at))
            if current_expiry <= now:
                count = 0
                current_expiry = expires_at
            count += 1
            self._counts[key] = (count, current_expiry)
            return count

    def _evict_expired(self, now: float) -> int:
        expired = [k for k, (_, exp) in self._counts.items() if exp <= now]
        for k in expired:
            del self._counts[k]
        if expired:
            logger.debug("Evicted expired rate limit windows", extra={"count": len(expired)})
        return len(expired)

    def _evict_oldest(self, count: int) -> None:
        oldest = heapq.nsmallest(count, self._counts.items(), key=lambda item: item[1][1])
        for k, _ in oldest:
            del self._counts[k]
        logger.warning(
            "Rate limit store full, dropped live windows",
            extra={"count": len(oldest), "max_keys": self.max_keys},
        )

    def __len__(self) -> int:
        return len(self._counts)


class RedisRateLimitStore(RateLimitStore):
    """Shared counters using INCR + EXPIREAT in one pipeline."""

    backend = "redis"

    def __init__(self, client: redis.Redis, prefix: str = "ratelimit"):
        self.client = client
        self.prefix = prefix

    async def increment(self, key: str, expires_at: float) -> Optional[int]:
        redis_key = f"{self.prefix}:{key}"
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expireat(redis_key, int(math.ceil(expires_at)))
                count, _ = await pipe.execute()
            return int(count)
        except RedisError as e:
            RATE_LIMIT_STORE_ERRORS_TOTAL.labels(backend=self.backend).inc()
            logger.warning(
                "Rate limit store unavailable, admitting request",
                extra={"key": redis_key, "error": str(e)},
            )
            return None


class TenantRateLimiter:
    """Fixed-window per-tenant throttle."""

    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

    async def hit(self, tenant_id: str) -> RateLimitDecision:
        """Count one request for ``tenant_id`` and decide whether to admit it."""
        now = self.clock()
        window = int(now // self.window_seconds)
        reset_at = (window + 1) * self.window_seconds
        retry_after = max(1, int(math.ceil(reset_at - now)))

        count = await self.store.increment(f"{tenant_id}:{window}", reset_at)
        if count is None:
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_at=reset_at,
                retry_after=0,
            )

        allowed = count <= self.max_requests
        return RateLimitDecision(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            retry_after=0 if allowed else retry_after,
        )


def build_rate_limiter(
    backend: str,
    max_requests: int,
    window_seconds: int,
    redis_client: Optional[redis.Redis] = None,
) -> TenantRateLimiter:
    """Construct the limiter for the configured backend."""
    if backend == "redis":
        if redis_client is None:
            raise ValueError("redis backend requires a redis client")
        store: RateLimitStore = RedisRateLimitStore(redis_client)
    elif backend == "memory":
        store = InMemoryRateLimitStore()
    else:
        raise ValueError(f"Unknown rate limit backend: {backend}")
    return TenantRateLimiter(store, max_requests, window_seconds)


async def enforce_rate_limit(
    request: Request,
    response: Response,
    tenant: TenantContext = Depends(require_tenant),
) -> TenantContext:
    """Dependency that counts the request against the tenant's budget.

    The limiter lives on ``app.state.rate_limiter``; when absent, limiting is
    disabled.
    """
    limiter: Optional[TenantRateLimiter] = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return tenant

    decision = await limiter.hit(str(tenant.id))
    if not decision.allowed:
        RATE_LIMITED_REQUESTS_TOTAL.inc()
        logger.info(
            "Tenant rate limited",
            extra={"tenant_id": str(tenant.id), "retry_after": decision.retry_after},
        )
        raise decision.to_error()

    for name, value in decision.headers().items():
        response.headers[name] = value
    return tenant
