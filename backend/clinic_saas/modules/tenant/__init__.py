"""Tenant module.

Resolves each request to an active tenant, publishes the tenant context and
throttles requests per tenant.
"""

from clinic_saas.modules.tenant.models import Tenant
from clinic_saas.modules.tenant.rate_limiter import (
    InMemoryRateLimitStore,
    RedisRateLimitStore,
    TenantRateLimiter,
    build_rate_limiter,
    enforce_rate_limit,
)
from clinic_saas.modules.tenant.resolver import (
    Identity,
    TenantContext,
    TenantResolver,
    require_admin,
    require_tenant,
    resolve_tenant,
)

__all__ = [
    "Tenant",
    "Identity",
    "TenantContext",
    "TenantResolver",
    "TenantRateLimiter",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
    "build_rate_limiter",
    "enforce_rate_limit",
    "require_admin",
    "require_tenant",
    "resolve_tenant",
]
