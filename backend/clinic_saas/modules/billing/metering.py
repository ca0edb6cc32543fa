"""Usage metering against plan limits.

Samples are aggregated per calendar month. Crossing a positive cap is
reported once per (tenant, metric, month): the UsageLimitFlag unique
constraint decides which writer gets to emit the event.
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.database import transactional
from clinic_saas.core.errors import Result, ValidationError
from clinic_saas.core.metrics import USAGE_LIMIT_EXCEEDED_TOTAL
from clinic_saas.core.timeutils import month_bounds, utcnow
from clinic_saas.modules.billing.catalog import PlanCatalog
from clinic_saas.modules.billing.events import BillingEventLog
from clinic_saas.modules.billing.limits import (
    MetricType,
    exceeds_limit,
    usage_percentage,
    within_limit,
)
from clinic_saas.modules.billing.models import (
    BillingEventType,
    Plan,
    Subscription,
    UsageMetric,
)
from clinic_saas.modules.billing.repository import SubscriptionRepository, UsageRepository
from clinic_saas.modules.billing.schemas import UsageAnalyticsRow, UsageLimitCheckResponse

logger = logging.getLogger(__name__)


def parse_metric(metric_type: MetricType | str) -> Result[MetricType]:
    try:
        return Result.success(MetricType(metric_type))
    except ValueError:
        return Result.failure(
            ValidationError("Unknown metric type", {"metric_type": str(metric_type)})
        )


class UsageMeter:
    """Records usage samples and flags overages."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: Optional[PlanCatalog] = None,
        events: Optional[BillingEventLog] = None,
    ):
        self.session = session
        self.usage_repo = UsageRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.catalog = catalog or PlanCatalog(session)
        self.events = events or BillingEventLog(session)

    @transactional
    async def record_usage(
        self,
        tenant_id: uuid.UUID,
        metric_type: MetricType | str,
        value: int,
        unit: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Result[tuple[UsageMetric, bool]]:
        """Persist a sample and check the period total against the plan.

        Returns the stored sample and whether this call flagged an overage.
        """
        parsed = parse_metric(metric_type)
        if not parsed.ok:
            return parsed
        metric = parsed.value
        if value < 0:
            return Result.failure(ValidationError("Usage value cannot be negative"))

        if period_start is None:
            if period_end is not None:
                return Result.failure(
                    ValidationError("period_start is required when period_end is given")
                )
            period_start, period_end = month_bounds(utcnow())
        elif period_end is None:
            period_end = month_bounds(period_start)[1]
        if period_end <= period_start:
            return Result.failure(ValidationError("period_end must be after period_start"))

        subscription = await self.subscription_repo.get_by_tenant(tenant_id)
        if subscription_id is None and subscription is not None:
            subscription_id = subscription.id

        sample = await self.usage_repo.create(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            metric_type=metric.value,
            metric_value=value,
            metric_unit=unit,
            period_start=period_start,
            period_end=period_end,
        )
        flagged = await self._check_limit(tenant_id, metric, period_start, subscription)
        return Result.success((sample, flagged))

    @transactional
    async def recheck_limits(
        self,
        tenant_id: uuid.UUID,
        metric_type: MetricType | str,
        period_start: Optional[datetime] = None,
    ) -> Result[bool]:
        """Re-run the overage check for a period without adding a sample."""
        parsed = parse_metric(metric_type)
        if not parsed.ok:
            return parsed
        subscription = await self.subscription_repo.get_by_tenant(tenant_id)
        flagged = await self._check_limit(
            tenant_id, parsed.value, period_start or utcnow(), subscription
        )
        return Result.success(flagged)

    async def check_usage_limits(
        self,
        tenant_id: uuid.UUID,
        metric_type: MetricType | str,
        now: Optional[datetime] = None,
    ) -> Result[UsageLimitCheckResponse]:
        """Current month's usage against the plan limit. Read only."""
        parsed = parse_metric(metric_type)
        if not parsed.ok:
            return parsed
        metric = parsed.value
        subscription = await self.subscription_repo.get_by_tenant(tenant_id)
        if subscription is None:
            return Result.success(
                UsageLimitCheckResponse(
                    metric_type=metric.value,
                    within_limit=False,
                    current=0,
                    limit=0,
                    percentage=0.0,
                )
            )

        start, end = month_bounds(now or utcnow())
        current = await self.usage_repo.sum_for_period(tenant_id, metric.value, start, end)
        plan = await self._plan_for_period(subscription, start)
        limit = plan.plan_limits.limit_for(metric) if plan is not None else 0
        return Result.success(
            UsageLimitCheckResponse(
                metric_type=metric.value,
                within_limit=within_limit(current, limit),
                current=current,
                limit=limit,
                percentage=usage_percentage(current, limit),
            )
        )

    async def usage_overview(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> list[UsageLimitCheckResponse]:
        return [
            (await self.check_usage_limits(tenant_id, metric, now)).unwrap()
            for metric in MetricType
        ]

    async def list_usage(
        self,
        tenant_id: uuid.UUID,
        metric_type: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> list[UsageMetric]:
        return await self.usage_repo.list_for_tenant(
            tenant_id,
            metric_type=metric_type,
            period_start=period_start,
            period_end=period_end,
        )

    async def usage_analytics(
        self,
        tenant_id: uuid.UUID,
        metric_type: Optional[MetricType | str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> Result[list[UsageAnalyticsRow]]:
        """Daily total, average and peak per metric, newest day first.

        Samples count toward the day their period starts; both bounds are
        inclusive days.
        """
        metric = None
        if metric_type is not None:
            parsed = parse_metric(metric_type)
            if not parsed.ok:
                return parsed
            metric = parsed.value.value
        if period_start and period_end and period_end < period_start:
            return Result.failure(ValidationError("period_end must not be before period_start"))
        start = datetime.combine(period_start, time()) if period_start else None
        end = datetime.combine(period_end + timedelta(days=1), time()) if period_end else None

        groups: dict[tuple[date, str, Optional[str]], list[int]] = defaultdict(list)
        for started, name, unit, value in await self.usage_repo.analytics_rows(
            tenant_id, metric_type=metric, start=start, end=end
        ):
            groups[(started.date(), name, unit)].append(value)

        rows = [
            UsageAnalyticsRow(
                day=day,
                metric_type=name,
                metric_unit=unit,
                total_usage=sum(values),
                average_usage=round(sum(values) / len(values), 2),
                peak_usage=max(values),
                data_points=len(values),
            )
            for (day, name, unit), values in groups.items()
        ]
        rows.sort(key=lambda row: (row.metric_type, row.metric_unit or ""))
        rows.sort(key=lambda row: row.day, reverse=True)
        return Result.success(rows)

    async def _plan_for_period(
        self, subscription: Subscription, period_start: datetime
    ) -> Optional[Plan]:
        return await self.catalog.get_plan(subscription.plan_id_for_period(period_start))

    async def _check_limit(
        self,
        tenant_id: uuid.UUID,
        metric: MetricType,
        period_start: datetime,
        subscription: Optional[Subscription],
    ) -> bool:
        if subscription is None:
            return False

        month_start, month_end = month_bounds(period_start)
        plan = await self._plan_for_period(subscription, month_start)
        if plan is None:
            return False
        limit = plan.plan_limits.limit_for(metric)
        current = await self.usage_repo.sum_for_period(
            tenant_id, metric.value, month_start, month_end
        )
        if not exceeds_limit(current, limit):
            return False

        event_type = BillingEventType.USAGE_LIMIT_EXCEEDED.value
        flag = await self.usage_repo.add_flag(tenant_id, metric.value, month_start, event_type)
        if flag is None:
            # Already reported for this period
            return False

        event = await self.events.append(
            tenant_id,
            BillingEventType.USAGE_LIMIT_EXCEEDED,
            {
                "metricType": metric.value,
                "currentValue": current,
                "limit": limit,
                "plan": plan.slug,
                "periodStart": month_start,
            },
        )
        if event is not None:
            flag.billing_event_id = event.id
            await self.session.flush()

        USAGE_LIMIT_EXCEEDED_TOTAL.labels(metric_type=metric.value).inc()
        logger.warning(
            "Usage limit exceeded",
            extra={
                "tenant_id": str(tenant_id),
                "metric_type": metric.value,
                "current": current,
                "limit": limit,
            },
        )
        return True
