"""Tests for the subscription state machine and lifecycle sweeps."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from clinic_saas.core.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from clinic_saas.modules.billing.models import BillingEventType, SubscriptionStatus
from clinic_saas.modules.billing.schemas import PlanUpdate, SubscriptionUpdate
from clinic_saas.modules.billing.subscriptions import (
    ALLOWED_TRANSITIONS,
    advance_period,
    can_transition,
)

status_strategy = st.sampled_from(list(SubscriptionStatus))


async def _plan_id(service, slug="basic"):
    return (await service.catalog.get_plan_by_slug(slug)).id


async def _subscribe(service, tenant, slug="basic", **kwargs):
    plan_id = await _plan_id(service, slug)
    return (
        await service.subscriptions.create_subscription(tenant.id, plan_id, **kwargs)
    ).unwrap()


class TestTransitionTable:
    """Every status change goes through the table."""

    @given(current=status_strategy, target=status_strategy)
    @settings(max_examples=100)
    def test_can_transition_matches_table(
        self, current: SubscriptionStatus, target: SubscriptionStatus
    ) -> None:
        assert can_transition(current, target) == (target in ALLOWED_TRANSITIONS[current])

    def test_cancelled_is_final(self) -> None:
        assert all(
            not can_transition(SubscriptionStatus.CANCELLED, target)
            for target in SubscriptionStatus
        )

    def test_suspended_only_cancels(self) -> None:
        assert ALLOWED_TRANSITIONS[SubscriptionStatus.SUSPENDED] == {SubscriptionStatus.CANCELLED}

    def test_string_statuses(self) -> None:
        assert can_transition("trial", "active")
        assert not can_transition("active", "trial")

    def test_advance_period(self) -> None:
        start = datetime(2026, 1, 31, 12, 0)
        assert advance_period(start, "monthly") == datetime(2026, 2, 28, 12, 0)
        assert advance_period(start, "yearly") == datetime(2027, 1, 31, 12, 0)


class TestCreateSubscription:
    """Subscribing and re-subscribing."""

    @pytest.mark.asyncio
    async def test_trial_from_plan(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        assert subscription.status == SubscriptionStatus.TRIAL.value
        assert subscription.trial_end - subscription.current_period_start == timedelta(days=14)
        assert subscription.next_billing_at == subscription.trial_end
        assert subscription.price == 9_900

    @pytest.mark.asyncio
    async def test_no_trial_is_active(self, service, tenant):
        subscription = await _subscribe(service, tenant, trial_days=0, billing_cycle="yearly")

        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.trial_end is None
        assert subscription.billing_cycle == "yearly"
        assert subscription.current_period_end == advance_period(
            subscription.current_period_start, "yearly"
        )

    @pytest.mark.asyncio
    async def test_second_subscription_conflicts(self, service, tenant):
        await _subscribe(service, tenant)
        plan_id = await _plan_id(service, "professional")

        result = await service.subscriptions.create_subscription(tenant.id, plan_id)

        assert isinstance(result.error, ConflictError)

    @pytest.mark.asyncio
    async def test_resubscribe_after_cancel_reuses_row(self, service, tenant):
        first = await _subscribe(service, tenant)
        first_id = first.id
        (await service.subscriptions.cancel_subscription(tenant.id, first_id)).unwrap()

        second = await _subscribe(service, tenant, "professional", trial_days=0)

        assert second.id == first_id
        assert second.status == SubscriptionStatus.ACTIVE.value
        assert second.cancelled_at is None
        assert second.price == 29_900

    @pytest.mark.asyncio
    async def test_unknown_plan(self, service, tenant):
        result = await service.subscriptions.create_subscription(tenant.id, uuid.uuid4())

        assert isinstance(result.error, NotFoundError)

    @pytest.mark.asyncio
    async def test_inactive_plan(self, service, tenant):
        plan_id = await _plan_id(service)
        (await service.catalog.update_plan(plan_id, PlanUpdate(is_active=False))).unwrap()

        result = await service.subscriptions.create_subscription(tenant.id, plan_id)

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_created_event(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        events = await service.events.list_events(
            tenant.id, event_type=BillingEventType.SUBSCRIPTION_CREATED.value
        )

        assert len(events) == 1
        assert events[0].event_data["subscriptionId"] == str(subscription.id)
        assert events[0].event_data["trialDays"] == 14


class TestUpdateAndCancel:
    """Whitelisted updates and cancellation."""

    @pytest.mark.asyncio
    async def test_plan_change_keeps_previous_plan(self, service, tenant):
        subscription = await _subscribe(service, tenant)
        basic_id = subscription.plan_id
        professional_id = await _plan_id(service, "professional")

        result = await service.subscriptions.update_subscription(
            tenant.id, subscription.id, SubscriptionUpdate(plan_id=professional_id)
        )

        updated = result.unwrap()
        assert updated.plan_id == professional_id
        assert updated.previous_plan_id == basic_id
        assert updated.plan_changed_at is not None
        assert updated.price == 29_900

    @pytest.mark.asyncio
    async def test_disallowed_status_change(self, service, tenant):
        subscription = await _subscribe(service, tenant, trial_days=0)

        result = await service.subscriptions.update_subscription(
            tenant.id, subscription.id, SubscriptionUpdate(status=SubscriptionStatus.SUSPENDED)
        )

        assert isinstance(result.error, InvalidStateTransition)

    @pytest.mark.asyncio
    async def test_empty_update(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        result = await service.subscriptions.update_subscription(
            tenant.id, subscription.id, SubscriptionUpdate()
        )

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_cancel(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        result = await service.subscriptions.cancel_subscription(
            tenant.id, subscription.id, "switching vendor"
        )

        cancelled = result.unwrap()
        assert cancelled.status == SubscriptionStatus.CANCELLED.value
        assert cancelled.cancelled_at is not None
        assert cancelled.cancel_reason == "switching vendor"
        assert cancelled.auto_renew is False
        assert cancelled.next_billing_at is None

    @pytest.mark.asyncio
    async def test_cancel_twice(self, service, tenant):
        subscription = await _subscribe(service, tenant)
        subscription_id = subscription.id
        await service.subscriptions.cancel_subscription(tenant.id, subscription_id)

        result = await service.subscriptions.cancel_subscription(tenant.id, subscription_id)

        assert isinstance(result.error, InvalidStateTransition)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_cancel(self, service, tenant, other_tenant):
        subscription = await _subscribe(service, tenant)

        result = await service.subscriptions.cancel_subscription(other_tenant.id, subscription.id)

        assert isinstance(result.error, NotFoundError)


class TestLifecycle:
    """Trial expiry, grace window and renewal."""

    @pytest.mark.asyncio
    async def test_trial_without_payment_method_goes_past_due(self, service, tenant):
        subscription = await _subscribe(service, tenant)
        after_trial = subscription.trial_end + timedelta(minutes=1)

        result = await service.subscriptions.expire_trial(tenant.id, after_trial)

        expired = result.unwrap()
        assert expired.status == SubscriptionStatus.PAST_DUE.value
        assert expired.past_due_since == after_trial

    @pytest.mark.asyncio
    async def test_trial_with_payment_method_activates(self, service, tenant):
        subscription = await _subscribe(service, tenant, payment_method_id="pm_visa")
        trial_end = subscription.trial_end

        expired = (
            await service.subscriptions.expire_trial(tenant.id, trial_end + timedelta(hours=1))
        ).unwrap()

        assert expired.status == SubscriptionStatus.ACTIVE.value
        assert expired.current_period_start == trial_end
        assert expired.current_period_end == advance_period(trial_end, "monthly")

    @pytest.mark.asyncio
    async def test_trial_not_due(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        result = await service.subscriptions.expire_trial(
            tenant.id, subscription.trial_end - timedelta(days=1)
        )

        assert result.ok
        assert result.value is None

    @pytest.mark.asyncio
    async def test_grace_window(self, service, tenant):
        await _subscribe(service, tenant, trial_days=0)
        failed_at = datetime(2026, 3, 1)
        (await service.subscriptions.record_charge_failure(tenant.id, failed_at)).unwrap()

        inside = await service.subscriptions.enforce_grace_window(
            tenant.id, failed_at + timedelta(days=7)
        )
        assert inside.value is None

        suspended = await service.subscriptions.enforce_grace_window(
            tenant.id, failed_at + timedelta(days=7, seconds=1)
        )
        assert suspended.value.status == SubscriptionStatus.SUSPENDED.value

    @pytest.mark.asyncio
    async def test_recovery_inside_grace_window(self, service, tenant):
        await _subscribe(service, tenant, trial_days=0)
        failed_at = datetime(2026, 3, 1)
        await service.subscriptions.record_charge_failure(tenant.id, failed_at)

        result = await service.subscriptions.record_charge_recovered(
            tenant.id, failed_at + timedelta(days=3)
        )

        recovered = result.unwrap()
        assert recovered.status == SubscriptionStatus.ACTIVE.value
        assert recovered.past_due_since is None
        assert recovered.last_payment_at == failed_at + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_recovery_after_grace_window(self, service, tenant):
        await _subscribe(service, tenant, trial_days=0)
        failed_at = datetime(2026, 3, 1)
        await service.subscriptions.record_charge_failure(tenant.id, failed_at)

        result = await service.subscriptions.record_charge_recovered(
            tenant.id, failed_at + timedelta(days=8)
        )

        assert isinstance(result.error, InvalidStateTransition)

    @pytest.mark.asyncio
    async def test_suspended_cannot_reactivate(self, service, tenant):
        await _subscribe(service, tenant, trial_days=0)
        failed_at = datetime(2026, 3, 1)
        await service.subscriptions.record_charge_failure(tenant.id, failed_at)
        await service.subscriptions.enforce_grace_window(tenant.id, failed_at + timedelta(days=30))

        result = await service.subscriptions.record_charge_recovered(
            tenant.id, failed_at + timedelta(days=31)
        )

        assert isinstance(result.error, InvalidStateTransition)

    @pytest.mark.asyncio
    async def test_renew_advances_period(self, service, tenant):
        subscription = await _subscribe(service, tenant, trial_days=0)
        old_end = subscription.current_period_end

        renewed = (
            await service.subscriptions.renew(tenant.id, old_end + timedelta(seconds=1))
        ).unwrap()

        assert renewed.current_period_start == old_end
        assert renewed.current_period_end == advance_period(old_end, "monthly")
        assert renewed.next_billing_at == renewed.current_period_end

    @pytest.mark.asyncio
    async def test_no_renewal_without_auto_renew(self, service, tenant):
        subscription = await _subscribe(service, tenant, trial_days=0, auto_renew=False)

        result = await service.subscriptions.renew(
            tenant.id, subscription.current_period_end + timedelta(days=1)
        )

        assert result.value is None

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, service, tenant):
        await _subscribe(service, tenant, trial_days=0)
        await service.subscriptions.record_charge_failure(tenant.id, datetime(2026, 3, 1))

        events = await service.events.list_events(
            tenant.id, event_type=BillingEventType.SUBSCRIPTION_UPDATED.value
        )

        assert events[0].event_data["trigger"] == "charge_failed"
        assert events[0].event_data["fromStatus"] == "active"
        assert events[0].event_data["toStatus"] == "past_due"


class TestStatusSummary:
    """Days until renewal never goes negative."""

    @pytest.mark.asyncio
    async def test_days_until_renewal(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        summary = await service.subscriptions.status_summary(
            tenant.id, subscription.trial_end - timedelta(days=3, hours=12)
        )

        assert summary.status == "trial"
        assert summary.plan.slug == "basic"
        assert summary.days_until_renewal == 4
        assert summary.price == Decimal("99.00")

    @pytest.mark.asyncio
    async def test_days_until_renewal_floor(self, service, tenant):
        subscription = await _subscribe(service, tenant)

        summary = await service.subscriptions.status_summary(
            tenant.id, subscription.trial_end + timedelta(days=3)
        )

        assert summary.days_until_renewal == 0

    @pytest.mark.asyncio
    async def test_no_subscription(self, service, tenant):
        assert await service.subscriptions.status_summary(tenant.id) is None
        assert await service.subscriptions.get_current(tenant.id) is None
