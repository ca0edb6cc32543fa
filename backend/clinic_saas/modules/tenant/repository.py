"""Repository for tenant lookups."""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.modules.tenant.models import Tenant


class TenantRepository:
    """Repository for tenant operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, tenant_id: uuid.UUID) -> Optional[Tenant]:
        result = await self.session.execute(
            select(Tenant).where(Tenant.id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_by_slug(self, slug: str) -> Optional[Tenant]:
        result = await self.session.execute(
            select(Tenant).where(Tenant.slug == slug)
        )
        return result.scalar_one_or_none()

    async def list_active_ids(self) -> list[uuid.UUID]:
        """IDs of all active tenants, used by scheduled sweeps."""
        result = await self.session.execute(
            select(Tenant.id).where(Tenant.is_active == True).order_by(Tenant.slug)
        )
        return list(result.scalars().all())

    async def create(self, slug: str, name: str, **kwargs) -> Tenant:
        """Create a tenant. Used by provisioning scripts and tests."""
        tenant = Tenant(slug=slug, name=name, **kwargs)
        self.session.add(tenant)
        await self.session.flush()
        return tenant
