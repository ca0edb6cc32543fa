"""FastAPI dependencies for billing routes."""

from typing import Callable, Awaitable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.database import get_session
from clinic_saas.core.errors import AccessDenied
from clinic_saas.modules.billing.service import BillingService
from clinic_saas.modules.tenant.rate_limiter import enforce_rate_limit
from clinic_saas.modules.tenant.resolver import TenantContext


async def get_billing_service(
    session: AsyncSession = Depends(get_session),
) -> BillingService:
    return BillingService(session)


def require_feature(feature: str) -> Callable[..., Awaitable[TenantContext]]:
    """Build a dependency that rejects tenants whose plan lacks ``feature``.

    Usage::

        @router.get("/reports", dependencies=[Depends(require_feature("analytics"))])
    """

    async def dependency(
        tenant: TenantContext = Depends(enforce_rate_limit),
        service: BillingService = Depends(get_billing_service),
    ) -> TenantContext:
        check = await service.check_feature(tenant.id, feature)
        if not check.has_access:
            raise AccessDenied(
                f"Current plan does not include '{feature}'",
                {"feature": feature, "plan": check.plan},
            )
        return tenant

    return dependency
