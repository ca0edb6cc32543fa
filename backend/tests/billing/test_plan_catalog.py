"""Tests for the plan catalog and plan limits."""

import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaValidationError

from clinic_saas.core.errors import ConflictError, NotFoundError, ValidationError
from clinic_saas.modules.billing.catalog import DEFAULT_PLANS, PlanCatalog
from clinic_saas.modules.billing.limits import (
    MetricType,
    PlanLimits,
    exceeds_limit,
    usage_percentage,
    within_limit,
)
from clinic_saas.modules.billing.schemas import PlanCreate, PlanResponse, PlanUpdate


class TestPlanLimits:
    """Limits are validated when loaded."""

    def test_missing_metric_is_zero(self):
        limits = PlanLimits.from_storage({"users": 5})

        assert limits.limit_for(MetricType.USERS) == 5
        assert limits.limit_for(MetricType.API_CALLS) == 0

    def test_legacy_keys(self):
        limits = PlanLimits.from_storage({"appointments_per_month": 1000, "storage_gb": 10})

        assert limits.appointments == 1000
        assert limits.storage == 10

    def test_rejects_unknown_and_invalid(self):
        with pytest.raises(SchemaValidationError):
            PlanLimits.from_storage({"beds": 10})
        with pytest.raises(SchemaValidationError):
            PlanLimits.from_storage({"users": -2})

    def test_empty_storage(self):
        assert PlanLimits.from_storage(None).to_storage() == {
            "users": 0, "patients": 0, "appointments": 0, "storage": 0, "api_calls": 0,
        }

    @pytest.mark.parametrize(
        "current,limit,within,exceeds",
        [
            (0, 0, True, False),
            (1, 0, False, False),
            (500, 500, True, False),
            (501, 500, False, True),
            (10**9, -1, True, False),
        ],
    )
    def test_limit_predicates(self, current, limit, within, exceeds):
        assert within_limit(current, limit) is within
        assert exceeds_limit(current, limit) is exceeds

    def test_usage_percentage(self):
        assert usage_percentage(250, 500) == 50.0
        assert usage_percentage(10, -1) == 0.0
        assert usage_percentage(10, 0) == 0.0


class TestPlanCatalog:
    """Catalog reads and admin writes."""

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, session):
        catalog = PlanCatalog(session)

        first = (await catalog.seed_default_plans()).unwrap()
        second = (await catalog.seed_default_plans()).unwrap()

        assert [plan.slug for plan in first] == [plan["slug"] for plan in DEFAULT_PLANS]
        assert second == []

    @pytest.mark.asyncio
    async def test_list_public_sorted_by_price(self, service):
        plans = await service.catalog.list_public_plans()

        assert [plan.slug for plan in plans] == ["basic", "professional", "enterprise"]

    @pytest.mark.asyncio
    async def test_default_plan_contents(self, service):
        basic = await service.catalog.get_plan_by_slug("basic")
        enterprise = await service.catalog.get_plan_by_slug("enterprise")

        assert basic.price == 9_900
        assert basic.trial_days == 14
        assert basic.plan_limits.patients == 500
        assert basic.has_feature("appointments")
        assert not basic.has_feature("analytics")
        assert enterprise.plan_limits.users == -1
        assert enterprise.trial_days == 30

    @pytest.mark.asyncio
    async def test_create_plan(self, service):
        result = await service.catalog.create_plan(
            PlanCreate(
                name="Clinic Lite",
                slug="clinic-lite",
                price=Decimal("49.50"),
                features=["appointments"],
                limits=PlanLimits(users=2, patients=100),
            )
        )

        plan = result.unwrap()
        assert plan.price == 4_950
        assert plan.limits["users"] == 2
        response = PlanResponse.from_model(plan)
        assert response.price == Decimal("49.50")
        assert response.limits["patients"] == 100

    @pytest.mark.asyncio
    async def test_duplicate_slug(self, service):
        result = await service.catalog.create_plan(
            PlanCreate(name="Another Basic", slug="basic", price=Decimal("1.00"))
        )

        assert isinstance(result.error, ConflictError)

    @pytest.mark.asyncio
    async def test_update_plan(self, service):
        plan_id = (await service.catalog.get_plan_by_slug("basic")).id

        result = await service.catalog.update_plan(
            plan_id,
            PlanUpdate(price=Decimal("109.00"), limits=PlanLimits(users=10, patients=800)),
        )

        plan = result.unwrap()
        assert plan.price == 10_900
        assert plan.plan_limits.users == 10
        assert plan.plan_limits.appointments == 0

    @pytest.mark.asyncio
    async def test_update_requires_fields(self, service):
        plan_id = (await service.catalog.get_plan_by_slug("basic")).id

        result = await service.catalog.update_plan(plan_id, PlanUpdate())

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_update_unknown_plan(self, service):
        result = await service.catalog.update_plan(uuid.uuid4(), PlanUpdate(name="Ghost"))

        assert isinstance(result.error, NotFoundError)

    @pytest.mark.asyncio
    async def test_private_plans_are_hidden(self, service):
        plan_id = (await service.catalog.get_plan_by_slug("enterprise")).id
        (await service.catalog.update_plan(plan_id, PlanUpdate(is_public=False))).unwrap()

        plans = await service.catalog.list_public_plans()

        assert "enterprise" not in [plan.slug for plan in plans]
        assert await service.catalog.get_plan(plan_id) is not None
