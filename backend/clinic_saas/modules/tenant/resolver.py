"""Tenant resolution and request context.

Resolves each request to exactly one active tenant. Hints are read in a
fixed priority order:

1. ``X-Tenant-ID`` header
2. ``X-Tenant-Slug`` header
3. Tenant claims on the authenticated identity (``request.state.identity``)
4. Hostname subdomain (``acme.clinic.example.com``)

Resolution always reads the tenant store so that deactivation takes effect
on the very next request. FastAPI's per-request dependency cache keeps it to
one lookup per request.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.database import get_session
from clinic_saas.core.errors import (
    AccessDenied,
    Result,
    TenantContextRequired,
    TenantNotFound,
)
from clinic_saas.core.logging import bind_tenant
from clinic_saas.core.metrics import TENANT_RESOLUTION_TOTAL
from clinic_saas.core.tracing import tag_tenant
from clinic_saas.modules.tenant.repository import TenantRepository

logger = logging.getLogger(__name__)

TENANT_ID_HEADER = "X-Tenant-ID"
TENANT_SLUG_HEADER = "X-Tenant-Slug"

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")

# Hostnames whose first label never names a tenant
RESERVED_SUBDOMAINS = frozenset({
    "www", "api", "admin", "app", "mail", "ftp", "ssh", "localhost",
    "staging", "test", "dev", "prod", "production",
    "support", "help", "docs", "blog", "status",
})


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as published by the authentication layer."""

    user_id: Optional[str] = None
    role: Optional[str] = None
    tenant_id: Optional[str] = None
    tenant_slug: Optional[str] = None


@dataclass(frozen=True)
class TenantHint:
    """Where the tenant reference came from and what it says."""

    source: str
    tenant_id: Optional[str] = None
    slug: Optional[str] = None


@dataclass(frozen=True)
class TenantContext:
    """Resolved tenant published into the request scope."""

    id: uuid.UUID
    slug: str
    name: str
    settings: dict[str, Any] = field(default_factory=dict)

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "slug": self.slug,
            "name": self.name,
            "settings": self.settings,
        }


def _claim(identity: Any, name: str) -> Optional[str]:
    if identity is None:
        return None
    if isinstance(identity, Mapping):
        value = identity.get(name)
    else:
        value = getattr(identity, name, None)
    return str(value) if value else None


def extract_subdomain(host: Optional[str]) -> Optional[str]:
    """Extract a tenant subdomain from a Host header value.

    Requires at least ``sub.domain.tld``; reserved and malformed labels
    yield None.
    """
    if not host:
        return None
    host = host.lower().split(":")[0]
    parts = host.split(".")
    if len(parts) < 3:
        return None
    subdomain = parts[0]
    if not SUBDOMAIN_PATTERN.match(subdomain):
        return None
    if subdomain in RESERVED_SUBDOMAINS:
        return None
    return subdomain


def extract_tenant_hint(
    headers: Mapping[str, str],
    identity: Any = None,
    host: Optional[str] = None,
) -> Optional[TenantHint]:
    """Pick the highest-priority tenant hint present on a request."""
    tenant_id = headers.get(TENANT_ID_HEADER)
    if tenant_id:
        return TenantHint(source="header_id", tenant_id=tenant_id.strip())

    slug = headers.get(TENANT_SLUG_HEADER)
    if slug:
        return TenantHint(source="header_slug", slug=slug.strip().lower())

    claim_id = _claim(identity, "tenant_id")
    claim_slug = _claim(identity, "tenant_slug")
    if claim_id or claim_slug:
        return TenantHint(source="identity", tenant_id=claim_id, slug=claim_slug)

    subdomain = extract_subdomain(host)
    if subdomain:
        return TenantHint(source="subdomain", slug=subdomain)

    return None


def identity_owns_tenant(identity: Any, tenant: TenantContext) -> bool:
    """Whether the identity's tenant claims, if any, name ``tenant``.

    An identity without tenant claims is not bound to a tenant.
    """
    claim_id = _claim(identity, "tenant_id")
    claim_slug = _claim(identity, "tenant_slug")
    if claim_id and claim_id.lower() != str(tenant.id):
        return False
    if claim_slug and claim_slug.lower() != tenant.slug:
        return False
    return True


class TenantResolver:
    """Looks up the tenant a hint refers to and validates it is active."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = TenantRepository(session)

    async def resolve(self, hint: TenantHint) -> Result[TenantContext]:
        tenant = None
        if hint.tenant_id:
            try:
                tenant_uuid = uuid.UUID(hint.tenant_id)
            except ValueError:
                TENANT_RESOLUTION_TOTAL.labels(source=hint.source, outcome="invalid").inc()
                return Result.failure(TenantNotFound(details={"tenant": hint.tenant_id}))
            tenant = await self.repo.get_by_id(tenant_uuid)
        elif hint.slug:
            tenant = await self.repo.get_by_slug(hint.slug)

        if tenant is None or not tenant.is_active:
            TENANT_RESOLUTION_TOTAL.labels(source=hint.source, outcome="not_found").inc()
            logger.warning(
                "Tenant not found or inactive",
                extra={"source": hint.source, "tenant": hint.tenant_id or hint.slug},
            )
            return Result.failure(
                TenantNotFound(details={"tenant": hint.tenant_id or hint.slug})
            )

        TENANT_RESOLUTION_TOTAL.labels(source=hint.source, outcome="resolved").inc()
        return Result.success(
            TenantContext(
                id=tenant.id,
                slug=tenant.slug,
                name=tenant.name,
                settings=dict(tenant.settings or {}),
            )
        )


def get_identity(request: Request) -> Any:
    """Identity published by the authentication layer, if any."""
    return getattr(request.state, "identity", None)


async def resolve_tenant(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> Optional[TenantContext]:
    """Resolve the request's tenant, or None when no hint is present.

    An unknown or inactive tenant is always an error, even on routes that
    do not require a tenant.
    """
    identity = get_identity(request)
    hint = extract_tenant_hint(
        request.headers,
        identity=identity,
        host=request.headers.get("host"),
    )
    if hint is None:
        return None

    tenant = (await TenantResolver(session).resolve(hint)).unwrap()
    if not identity_owns_tenant(identity, tenant):
        TENANT_RESOLUTION_TOTAL.labels(source=hint.source, outcome="denied").inc()
        logger.warning(
            "Identity does not belong to requested tenant",
            extra={"source": hint.source, "tenant": str(tenant.id)},
        )
        raise AccessDenied(
            "Identity does not belong to this tenant", {"tenant": str(tenant.id)}
        )
    request.state.tenant = tenant
    bind_tenant(str(tenant.id))
    tag_tenant(str(tenant.id), hint.source)
    return tenant


async def require_tenant(
    tenant: Optional[TenantContext] = Depends(resolve_tenant),
) -> TenantContext:
    """Dependency for protected operations."""
    if tenant is None:
        TENANT_RESOLUTION_TOTAL.labels(source="none", outcome="missing").inc()
        raise TenantContextRequired()
    return tenant


async def require_admin(request: Request) -> Any:
    """Dependency for catalog management endpoints."""
    identity = get_identity(request)
    if _claim(identity, "role") != "admin":
        raise AccessDenied("Administrator role required")
    return identity
