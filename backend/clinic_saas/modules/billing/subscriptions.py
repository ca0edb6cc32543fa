"""Subscription ledger.

Each tenant has at most one Subscription row. Every status change goes
through ALLOWED_TRANSITIONS; a cancelled subscription is never revived
automatically, only by an explicit re-subscribe.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.config import settings
from clinic_saas.core.database import transactional
from clinic_saas.core.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    Result,
    ServiceError,
    ValidationError,
)
from clinic_saas.core.timeutils import add_months, utcnow
from clinic_saas.modules.billing.catalog import PlanCatalog
from clinic_saas.modules.billing.events import BillingEventLog
from clinic_saas.modules.billing.models import (
    BillingCycle,
    BillingEventType,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from clinic_saas.modules.billing.repository import SubscriptionRepository
from clinic_saas.modules.billing.schemas import SubscriptionStatusResponse, SubscriptionUpdate

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.SUSPENDED: frozenset({SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),
}

SUBSCRIPTION_UPDATE_FIELDS = frozenset({"plan_id", "status", "auto_renew", "cancel_reason"})


def can_transition(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    return SubscriptionStatus(target) in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]


def advance_period(start: datetime, billing_cycle: str) -> datetime:
    """End of a billing period beginning at ``start``."""
    months = 12 if billing_cycle == BillingCycle.YEARLY.value else 1
    return add_months(start, months)


class SubscriptionLedger:
    """Owns each tenant's subscription and its state machine."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: Optional[PlanCatalog] = None,
        events: Optional[BillingEventLog] = None,
        grace_days: Optional[int] = None,
    ):
        self.session = session
        self.repo = SubscriptionRepository(session)
        self.catalog = catalog or PlanCatalog(session)
        self.events = events or BillingEventLog(session)
        self.grace_days = settings.PAST_DUE_GRACE_DAYS if grace_days is None else grace_days

    # ==================== Reads ====================

    async def get_current(self, tenant_id: uuid.UUID) -> Optional[tuple[Subscription, Plan]]:
        """The tenant's subscription together with its plan."""
        subscription = await self.repo.get_by_tenant(tenant_id)
        if subscription is None:
            return None
        plan = await self.catalog.get_plan(subscription.plan_id)
        if plan is None:
            return None
        return subscription, plan

    async def get_subscription(self, tenant_id: uuid.UUID) -> Optional[Subscription]:
        return await self.repo.get_by_tenant(tenant_id)

    async def status_summary(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Optional[SubscriptionStatusResponse]:
        current = await self.get_current(tenant_id)
        if current is None:
            return None
        subscription, plan = current
        return SubscriptionStatusResponse.build(subscription, plan, now or utcnow())

    # ==================== Mutations ====================

    @transactional
    async def create_subscription(
        self,
        tenant_id: uuid.UUID,
        plan_id: uuid.UUID,
        billing_cycle: Optional[BillingCycle | str] = None,
        trial_days: Optional[int] = None,
        payment_method_id: Optional[str] = None,
        auto_renew: bool = True,
    ) -> Result[Subscription]:
        """Subscribe a tenant to a plan.

        A tenant with a cancelled subscription re-subscribes on the same row.
        """
        plan = await self.catalog.get_plan(plan_id)
        if plan is None:
            return Result.failure(NotFoundError("Plan not found", {"plan_id": str(plan_id)}))
        if not plan.is_active:
            return Result.failure(ValidationError("Plan is not available", {"plan_id": str(plan_id)}))
        if trial_days is not None and trial_days < 0:
            return Result.failure(ValidationError("trial_days cannot be negative"))

        existing = await self.repo.get_by_tenant(tenant_id)
        if existing is not None and existing.status != SubscriptionStatus.CANCELLED.value:
            return Result.failure(
                ConflictError(
                    "Tenant already has an active subscription",
                    {"subscription_id": str(existing.id)},
                )
            )

        now = utcnow()
        cycle = BillingCycle(billing_cycle or plan.billing_cycle).value
        effective_trial = plan.trial_days if trial_days is None else trial_days
        trial_end = now + timedelta(days=effective_trial) if effective_trial > 0 else None
        period_end = advance_period(now, cycle)

        fields: dict[str, Any] = {
            "plan_id": plan.id,
            "status": (
                SubscriptionStatus.TRIAL.value if trial_end else SubscriptionStatus.ACTIVE.value
            ),
            "current_period_start": now,
            "current_period_end": period_end,
            "trial_end": trial_end,
            "cancelled_at": None,
            "cancel_reason": None,
            "billing_cycle": cycle,
            "price": plan.price,
            "currency": plan.currency,
            "auto_renew": auto_renew,
            "payment_method_id": payment_method_id,
            "next_billing_at": trial_end or period_end,
            "past_due_since": None,
            "previous_plan_id": None,
            "plan_changed_at": None,
            "usage_stats": {},
        }
        if existing is not None:
            for key, value in fields.items():
                setattr(existing, key, value)
            subscription = await self.repo.save(existing)
        else:
            subscription = await self.repo.create(tenant_id=tenant_id, **fields)

        await self.events.append(
            tenant_id,
            BillingEventType.SUBSCRIPTION_CREATED,
            {
                "subscriptionId": subscription.id,
                "planId": plan.id,
                "billingCycle": cycle,
                "trialDays": effective_trial,
            },
        )
        logger.info(
            "Subscription created",
            extra={"tenant_id": str(tenant_id), "plan_slug": plan.slug, "status": subscription.status},
        )
        return Result.success(subscription)

    @transactional
    async def update_subscription(
        self,
        tenant_id: uuid.UUID,
        subscription_id: uuid.UUID,
        data: SubscriptionUpdate,
    ) -> Result[Subscription]:
        """Apply whitelisted changes. Status changes obey the transition table."""
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if key in SUBSCRIPTION_UPDATE_FIELDS and value is not None
        }
        if not changes:
            return Result.failure(ValidationError("No fields to update"))

        subscription = await self.repo.get_by_id(tenant_id, subscription_id)
        if subscription is None:
            return Result.failure(NotFoundError("Subscription not found"))

        now = utcnow()
        applied: dict[str, Any] = {}

        new_plan_id = changes.get("plan_id")
        if new_plan_id is not None and new_plan_id != subscription.plan_id:
            plan = await self.catalog.get_plan(new_plan_id)
            if plan is None:
                return Result.failure(NotFoundError("Plan not found", {"plan_id": str(new_plan_id)}))
            if not plan.is_active:
                return Result.failure(ValidationError("Plan is not available"))
            subscription.previous_plan_id = subscription.plan_id
            subscription.plan_changed_at = now
            subscription.plan_id = plan.id
            subscription.price = plan.price
            subscription.currency = plan.currency
            applied["plan_id"] = plan.id

        new_status = changes.get("status")
        if new_status is not None and SubscriptionStatus(new_status).value != subscription.status:
            error = self._transition(subscription, SubscriptionStatus(new_status), now)
            if error is not None:
                return Result.failure(error)
            applied["status"] = subscription.status

        if "auto_renew" in changes:
            subscription.auto_renew = changes["auto_renew"]
            applied["auto_renew"] = subscription.auto_renew
        if "cancel_reason" in changes:
            subscription.cancel_reason = changes["cancel_reason"]
            applied["cancel_reason"] = subscription.cancel_reason

        await self.repo.save(subscription)
        await self.events.append(
            tenant_id,
            BillingEventType.SUBSCRIPTION_UPDATED,
            {"subscriptionId": subscription.id, "changes": applied},
        )
        return Result.success(subscription)

    @transactional
    async def cancel_subscription(
        self,
        tenant_id: uuid.UUID,
        subscription_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Result[Subscription]:
        subscription = await self.repo.get_by_id(tenant_id, subscription_id)
        if subscription is None:
            return Result.failure(NotFoundError("Subscription not found"))

        error = self._transition(subscription, SubscriptionStatus.CANCELLED, utcnow())
        if error is not None:
            return Result.failure(error)
        subscription.cancel_reason = reason
        subscription.auto_renew = False
        subscription.next_billing_at = None
        await self.repo.save(subscription)

        await self.events.append(
            tenant_id,
            BillingEventType.SUBSCRIPTION_CANCELLED,
            {"subscriptionId": subscription.id, "reason": reason},
        )
        logger.info("Subscription cancelled", extra={"tenant_id": str(tenant_id)})
        return Result.success(subscription)

    # ==================== Lifecycle ====================
    # Each returns Result(None) when the subscription is not due for the change.

    @transactional
    async def expire_trial(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Result[Optional[Subscription]]:
        """End a finished trial: activate if it can be charged, else past due."""
        now = now or utcnow()
        subscription = await self.repo.get_by_tenant(tenant_id)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.TRIAL.value
            or subscription.trial_end is None
            or subscription.trial_end > now
        ):
            return Result.success(None)

        if subscription.auto_renew and subscription.payment_method_id:
            target = SubscriptionStatus.ACTIVE
            subscription.current_period_start = subscription.trial_end
            subscription.current_period_end = advance_period(
                subscription.trial_end, subscription.billing_cycle
            )
            subscription.next_billing_at = subscription.current_period_end
        else:
            target = SubscriptionStatus.PAST_DUE
        return await self._lifecycle_change(subscription, target, now, "trial_expired")

    @transactional
    async def record_charge_failure(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Result[Subscription]:
        subscription = await self.repo.get_by_tenant(tenant_id)
        if subscription is None:
            return Result.failure(NotFoundError("Subscription not found"))
        return await self._lifecycle_change(
            subscription, SubscriptionStatus.PAST_DUE, now or utcnow(), "charge_failed"
        )

    @transactional
    async def record_charge_recovered(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Result[Subscription]:
        """Reactivate a past-due subscription paid inside the grace window."""
        now = now or utcnow()
        subscription = await self.repo.get_by_tenant(tenant_id)
        if subscription is None:
            return Result.failure(NotFoundError("Subscription not found"))
        if (
            subscription.status == SubscriptionStatus.PAST_DUE.value
            and self._grace_expired(subscription, now)
        ):
            return Result.failure(
                InvalidStateTransition(
                    "Grace window exceeded",
                    {"past_due_since": subscription.past_due_since.isoformat()},
                )
            )
        subscription.last_payment_at = now
        return await self._lifecycle_change(
            subscription, SubscriptionStatus.ACTIVE, now, "payment_recovered"
        )

    @transactional
    async def enforce_grace_window(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Result[Optional[Subscription]]:
        """Suspend a subscription that stayed past due beyond the grace window."""
        now = now or utcnow()
        subscription = await self.repo.get_by_tenant(tenant_id)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.PAST_DUE.value
            or not self._grace_expired(subscription, now)
        ):
            return Result.success(None)
        return await self._lifecycle_change(
            subscription, SubscriptionStatus.SUSPENDED, now, "grace_window_exceeded"
        )

    @transactional
    async def renew(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Result[Optional[Subscription]]:
        """Advance an auto-renewing active subscription whose period has ended."""
        now = now or utcnow()
        subscription = await self.repo.get_by_tenant(tenant_id)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.ACTIVE.value
            or not subscription.auto_renew
            or subscription.current_period_end > now
        ):
            return Result.success(None)

        previous_end = subscription.current_period_end
        subscription.current_period_start = previous_end
        subscription.current_period_end = advance_period(previous_end, subscription.billing_cycle)
        subscription.next_billing_at = subscription.current_period_end
        await self.repo.save(subscription)
        await self.events.append(
            tenant_id,
            BillingEventType.SUBSCRIPTION_UPDATED,
            {
                "subscriptionId": subscription.id,
                "trigger": "renewed",
                "periodStart": subscription.current_period_start,
                "periodEnd": subscription.current_period_end,
            },
        )
        return Result.success(subscription)

    # ==================== Helpers ====================

    def _grace_expired(self, subscription: Subscription, now: datetime) -> bool:
        since = subscription.past_due_since
        return since is not None and now - since > timedelta(days=self.grace_days)

    def _transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        now: datetime,
    ) -> Optional[ServiceError]:
        """Move to ``target`` if the table allows it, stamping side fields."""
        current = SubscriptionStatus(subscription.status)
        if not can_transition(current, target):
            return InvalidStateTransition(
                f"Cannot change subscription from {current.value} to {target.value}",
                {"from": current.value, "to": target.value},
            )
        subscription.status = target.value
        if target == SubscriptionStatus.CANCELLED:
            subscription.cancelled_at = now
        elif target == SubscriptionStatus.PAST_DUE:
            subscription.past_due_since = now
        elif target == SubscriptionStatus.ACTIVE:
            subscription.past_due_since = None
        return None

    async def _lifecycle_change(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        now: datetime,
        trigger: str,
    ) -> Result[Subscription]:
        previous = subscription.status
        error = self._transition(subscription, target, now)
        if error is not None:
            return Result.failure(error)
        await self.repo.save(subscription)
        await self.events.append(
            subscription.tenant_id,
            BillingEventType.SUBSCRIPTION_UPDATED,
            {
                "subscriptionId": subscription.id,
                "trigger": trigger,
                "fromStatus": previous,
                "toStatus": subscription.status,
            },
        )
        logger.info(
            "Subscription status changed",
            extra={
                "tenant_id": str(subscription.tenant_id),
                "from_status": previous,
                "to_status": subscription.status,
                "trigger": trigger,
            },
        )
        return Result.success(subscription)
