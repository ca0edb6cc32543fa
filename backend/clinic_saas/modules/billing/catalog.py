"""Plan catalog.

Plans are read on nearly every request and written only by admins. Limits
are validated through PlanLimits on create, update and load.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.database import transactional
from clinic_saas.core.errors import ConflictError, NotFoundError, Result, ValidationError
from clinic_saas.modules.billing.limits import PlanLimits
from clinic_saas.modules.billing.models import BillingCycle, Plan
from clinic_saas.modules.billing.money import to_minor
from clinic_saas.modules.billing.repository import PlanRepository
from clinic_saas.modules.billing.schemas import PlanCreate, PlanUpdate

logger = logging.getLogger(__name__)

# Fields an update may touch
PLAN_UPDATE_FIELDS = frozenset({
    "name",
    "description",
    "price",
    "billing_cycle",
    "currency",
    "features",
    "limits",
    "trial_days",
    "setup_fee",
    "is_active",
    "is_public",
})

DEFAULT_PLANS: list[dict[str, Any]] = [
    {
        "name": "Basic",
        "slug": "basic",
        "description": "Essential features for small clinics",
        "price": "99.00",
        "features": ["appointments", "patients", "doctors", "basic_reports"],
        "limits": {"users": 5, "patients": 500, "appointments": 1000, "storage": 10},
        "trial_days": 14,
    },
    {
        "name": "Professional",
        "slug": "professional",
        "description": "Advanced features for growing practices",
        "price": "299.00",
        "features": [
            "appointments", "patients", "doctors", "diagnostics", "billing",
            "analytics", "api_access", "priority_support",
        ],
        "limits": {"users": 25, "patients": 5000, "appointments": 10000, "storage": 100},
        "trial_days": 14,
    },
    {
        "name": "Enterprise",
        "slug": "enterprise",
        "description": "Complete solution for large organizations",
        "price": "999.00",
        "features": [
            "appointments", "patients", "doctors", "diagnostics", "billing",
            "analytics", "api_access", "priority_support", "white_label",
            "custom_integrations", "dedicated_account_manager",
        ],
        "limits": {"users": -1, "patients": -1, "appointments": -1, "storage": 1000},
        "trial_days": 30,
    },
]


class PlanCatalog:
    """Registry of subscription plans."""

    def __init__(self, session: AsyncSession, repo: Optional[PlanRepository] = None):
        self.session = session
        self.repo = repo or PlanRepository(session)

    async def list_public_plans(self) -> list[Plan]:
        return await self.repo.list_public()

    async def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        return await self.repo.get_by_slug(slug)

    async def get_plan(self, plan_id: uuid.UUID) -> Optional[Plan]:
        return await self.repo.get_by_id(plan_id)

    @transactional
    async def create_plan(self, data: PlanCreate) -> Result[Plan]:
        """Create a plan. Duplicate slugs are rejected."""
        if await self.repo.get_by_slug(data.slug) is not None:
            return Result.failure(
                ConflictError("Plan slug already exists", {"slug": data.slug})
            )

        currency = data.currency.upper()
        plan = await self.repo.create(
            name=data.name,
            slug=data.slug,
            description=data.description,
            price=to_minor(data.price, currency),
            setup_fee=to_minor(data.setup_fee, currency),
            billing_cycle=BillingCycle(data.billing_cycle).value,
            currency=currency,
            features=list(data.features),
            limits=data.limits.to_storage(),
            trial_days=data.trial_days,
            is_active=data.is_active,
            is_public=data.is_public,
        )
        logger.info("Plan created", extra={"plan_slug": plan.slug})
        return Result.success(plan)

    @transactional
    async def update_plan(self, plan_id: uuid.UUID, data: PlanUpdate) -> Result[Plan]:
        """Apply whitelisted fields from a partial update."""
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if key in PLAN_UPDATE_FIELDS and value is not None
        }
        if not changes:
            return Result.failure(ValidationError("No fields to update"))

        plan = await self.repo.get_by_id(plan_id)
        if plan is None:
            return Result.failure(NotFoundError("Plan not found", {"plan_id": str(plan_id)}))

        currency = (changes.get("currency") or plan.currency).upper()
        if "currency" in changes:
            changes["currency"] = currency
        for money_field in ("price", "setup_fee"):
            if money_field in changes:
                changes[money_field] = to_minor(changes[money_field], currency)
        if "limits" in changes:
            changes["limits"] = PlanLimits.model_validate(changes["limits"]).to_storage()
        if "billing_cycle" in changes:
            changes["billing_cycle"] = BillingCycle(changes["billing_cycle"]).value

        for key, value in changes.items():
            setattr(plan, key, value)
        await self.session.flush()
        return Result.success(plan)

    @transactional
    async def seed_default_plans(self) -> Result[list[Plan]]:
        """Insert any default plan that is missing. Returns the ones created."""
        created = []
        for definition in DEFAULT_PLANS:
            if await self.repo.get_by_slug(definition["slug"]) is not None:
                continue
            result = await self.create_plan(PlanCreate(**definition))
            if not result.ok:
                return result
            created.append(result.value)
        if created:
            logger.info(
                "Seeded default plans",
                extra={"plans": [plan.slug for plan in created]},
            )
        return Result.success(created)
