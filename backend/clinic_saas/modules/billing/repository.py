"""Repositories for billing database operations.

Repositories flush but never commit; the ledger that owns the unit of work
decides. Every tenant-scoped query filters on ``tenant_id``. Balance columns
only move through single guarded UPDATE ... RETURNING statements.
"""

import uuid
from datetime import datetime, date, time, timedelta
from typing import Any, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.modules.billing.calculations import TERMINAL_INVOICE_STATUSES
from clinic_saas.modules.billing.models import (
    AllocationKind,
    BillingEvent,
    CLOSED_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentAllocation,
    PaymentStatus,
    Plan,
    Subscription,
    TenantSequence,
    UsageLimitFlag,
    UsageMetric,
)

REFUNDABLE_PAYMENT_STATUSES = (
    PaymentStatus.SUCCEEDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
)


class PlanRepository:
    """Repository for plan operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_public(self) -> list[Plan]:
        """Active, public plans ordered by price then name."""
        result = await self.session.execute(
            select(Plan)
            .where(Plan.is_active == True, Plan.is_public == True)  # noqa: E712
            .order_by(Plan.price, Plan.name)
        )
        return list(result.scalars().all())

    async def get_by_slug(self, slug: str) -> Optional[Plan]:
        result = await self.session.execute(select(Plan).where(Plan.slug == slug))
        return result.scalar_one_or_none()

    async def get_by_id(self, plan_id: uuid.UUID) -> Optional[Plan]:
        result = await self.session.execute(select(Plan).where(Plan.id == plan_id))
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> Plan:
        plan = Plan(**kwargs)
        self.session.add(plan)
        await self.session.flush()
        return plan


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_tenant(self, tenant_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_by_id(
        self, tenant_id: uuid.UUID, subscription_id: uuid.UUID
    ) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> Subscription:
        subscription = Subscription(**kwargs)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def save(self, subscription: Subscription) -> Subscription:
        await self.session.flush()
        return subscription


class InvoiceRepository:
    """Repository for invoice operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Optional[Invoice]:
        """Fetch an invoice, always reloading column values from the store."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> Invoice:
        invoice = Invoice(**kwargs)
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def save(self, invoice: Invoice) -> Invoice:
        await self.session.flush()
        return invoice

    async def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> tuple[list[Invoice], int]:
        """Page through invoices, newest first. Returns (items, total)."""
        conditions = [Invoice.tenant_id == tenant_id]
        if status:
            conditions.append(Invoice.status == status)
        if date_from:
            conditions.append(Invoice.created_at >= datetime.combine(date_from, time.min))
        if date_to:
            conditions.append(
                Invoice.created_at < datetime.combine(date_to + timedelta(days=1), time.min)
            )

        total = await self.session.scalar(
            select(func.count()).select_from(Invoice).where(*conditions)
        )
        result = await self.session.execute(
            select(Invoice)
            .where(*conditions)
            .order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def list_past_due(self, tenant_id: uuid.UUID, today: date) -> list[Invoice]:
        """Unpaid invoices whose due date has passed."""
        result = await self.session.execute(
            select(Invoice).where(
                Invoice.tenant_id == tenant_id,
                Invoice.status.in_([
                    InvoiceStatus.DRAFT.value,
                    InvoiceStatus.OPEN.value,
                    InvoiceStatus.PARTIALLY_PAID.value,
                ]),
                Invoice.due_date < today,
            )
        )
        return list(result.scalars().all())

    async def revenue_rows(
        self,
        tenant_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[tuple[datetime, Optional[str], str, str, int, int]]:
        """(created_at, plan name, currency, status, total, paid) per invoice.

        Voided invoices are left out. ``end`` is exclusive.
        """
        conditions = [
            Invoice.tenant_id == tenant_id,
            Invoice.status != InvoiceStatus.VOID.value,
        ]
        if start:
            conditions.append(Invoice.created_at >= start)
        if end:
            conditions.append(Invoice.created_at < end)
        result = await self.session.execute(
            select(
                Invoice.created_at,
                Plan.name,
                Invoice.currency,
                Invoice.status,
                Invoice.total_amount,
                Invoice.paid_amount,
            )
            .outerjoin(
                Subscription,
                (Subscription.id == Invoice.subscription_id)
                & (Subscription.tenant_id == Invoice.tenant_id),
            )
            .outerjoin(Plan, Plan.id == Subscription.plan_id)
            .where(*conditions)
        )
        return [tuple(row) for row in result.all()]

    async def count_by_status(self, tenant_id: uuid.UUID) -> dict[str, int]:
        result = await self.session.execute(
            select(Invoice.status, func.count())
            .where(Invoice.tenant_id == tenant_id)
            .group_by(Invoice.status)
        )
        return {status: count for status, count in result.all()}

    async def outstanding_balance(self, tenant_id: uuid.UUID) -> int:
        """Sum of balances on invoices that still accept payment."""
        total = await self.session.scalar(
            select(func.coalesce(func.sum(Invoice.balance_amount), 0)).where(
                Invoice.tenant_id == tenant_id,
                Invoice.status.not_in(sorted(CLOSED_INVOICE_STATUSES)),
            )
        )
        return int(total or 0)

    async def increment_paid(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, amount: int
    ) -> bool:
        """Atomically add ``amount`` to paid_amount.

        Matches only an open invoice whose new paid amount stays within its
        total. Returns False when no row matched.
        """
        stmt = (
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.tenant_id == tenant_id,
                Invoice.status.not_in(sorted(CLOSED_INVOICE_STATUSES)),
                Invoice.paid_amount + amount <= Invoice.total_amount,
            )
            .values(
                paid_amount=Invoice.paid_amount + amount,
                version=Invoice.version + 1,
            )
            .returning(Invoice.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def decrement_paid(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, amount: int
    ) -> bool:
        """Atomically subtract ``amount`` from paid_amount, never below zero."""
        stmt = (
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.tenant_id == tenant_id,
                Invoice.status.not_in(sorted(s.value for s in TERMINAL_INVOICE_STATUSES)),
                Invoice.paid_amount - amount >= 0,
            )
            .values(
                paid_amount=Invoice.paid_amount - amount,
                version=Invoice.version + 1,
            )
            .returning(Invoice.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None


class PaymentRepository:
    """Repository for payment operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: uuid.UUID, payment_id: uuid.UUID) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id, Payment.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> Payment:
        payment = Payment(**kwargs)
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def save(self, payment: Payment) -> Payment:
        await self.session.flush()
        return payment

    async def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        invoice_id: Optional[uuid.UUID] = None,
    ) -> tuple[list[Payment], int]:
        conditions = [Payment.tenant_id == tenant_id]
        if status:
            conditions.append(Payment.status == status)
        if invoice_id:
            conditions.append(Payment.invoice_id == invoice_id)

        total = await self.session.scalar(
            select(func.count()).select_from(Payment).where(*conditions)
        )
        result = await self.session.execute(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc(), Payment.payment_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def increment_refund(
        self,
        tenant_id: uuid.UUID,
        payment_id: uuid.UUID,
        amount: int,
        reason: Optional[str],
        refunded_at: datetime,
    ) -> Optional[int]:
        """Atomically add a refund, capped at the payment amount.

        Also sets the refund status in the same statement. Returns the new
        refund_amount, or None when the guard rejected the update.
        """
        new_refund = Payment.refund_amount + amount
        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.tenant_id == tenant_id,
                Payment.status.in_(REFUNDABLE_PAYMENT_STATUSES),
                new_refund <= Payment.amount,
            )
            .values(
                refund_amount=new_refund,
                status=case(
                    (new_refund == Payment.amount, PaymentStatus.REFUNDED.value),
                    else_=PaymentStatus.PARTIALLY_REFUNDED.value,
                ),
                refund_reason=reason,
                refunded_at=refunded_at,
            )
            .returning(Payment.refund_amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def increment_allocated(
        self, tenant_id: uuid.UUID, payment_id: uuid.UUID, amount: int
    ) -> bool:
        """Atomically reserve ``amount`` of a succeeded payment for allocation."""
        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.tenant_id == tenant_id,
                Payment.status == PaymentStatus.SUCCEEDED.value,
                Payment.allocated_amount + amount <= Payment.amount,
            )
            .values(allocated_amount=Payment.allocated_amount + amount)
            .returning(Payment.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def decrement_allocated(
        self, tenant_id: uuid.UUID, payment_id: uuid.UUID, amount: int
    ) -> bool:
        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.tenant_id == tenant_id,
                Payment.allocated_amount - amount >= 0,
            )
            .values(allocated_amount=Payment.allocated_amount - amount)
            .returning(Payment.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None


class AllocationRepository:
    """Repository for the append-only allocation ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, tenant_id: uuid.UUID, allocation_id: uuid.UUID
    ) -> Optional[PaymentAllocation]:
        result = await self.session.execute(
            select(PaymentAllocation).where(
                PaymentAllocation.id == allocation_id,
                PaymentAllocation.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_reversal_of(
        self, tenant_id: uuid.UUID, allocation_id: uuid.UUID
    ) -> Optional[PaymentAllocation]:
        result = await self.session.execute(
            select(PaymentAllocation).where(
                PaymentAllocation.tenant_id == tenant_id,
                PaymentAllocation.reverses_id == allocation_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> PaymentAllocation:
        allocation = PaymentAllocation(**kwargs)
        self.session.add(allocation)
        await self.session.flush()
        return allocation

    async def create_reversal(self, **kwargs) -> Optional[PaymentAllocation]:
        """Insert a reversal row; None if the allocation was already reversed."""
        try:
            async with self.session.begin_nested():
                reversal = PaymentAllocation(kind=AllocationKind.REVERSAL.value, **kwargs)
                self.session.add(reversal)
        except IntegrityError:
            return None
        return reversal

    async def list_for_payment(
        self, tenant_id: uuid.UUID, payment_id: uuid.UUID
    ) -> list[PaymentAllocation]:
        result = await self.session.execute(
            select(PaymentAllocation)
            .where(
                PaymentAllocation.tenant_id == tenant_id,
                PaymentAllocation.payment_id == payment_id,
            )
            .order_by(PaymentAllocation.created_at)
        )
        return list(result.scalars().all())


class UsageRepository:
    """Repository for usage samples and overage flags."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> UsageMetric:
        metric = UsageMetric(**kwargs)
        self.session.add(metric)
        await self.session.flush()
        return metric

    async def sum_for_period(
        self,
        tenant_id: uuid.UUID,
        metric_type: str,
        start: datetime,
        end: datetime,
    ) -> int:
        """Sum of samples whose period starts in ``[start, end)``."""
        total = await self.session.scalar(
            select(func.coalesce(func.sum(UsageMetric.metric_value), 0)).where(
                UsageMetric.tenant_id == tenant_id,
                UsageMetric.metric_type == metric_type,
                UsageMetric.period_start >= start,
                UsageMetric.period_start < end,
            )
        )
        return int(total or 0)

    async def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        metric_type: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> list[UsageMetric]:
        conditions = [UsageMetric.tenant_id == tenant_id]
        if metric_type:
            conditions.append(UsageMetric.metric_type == metric_type)
        if period_start:
            conditions.append(UsageMetric.period_start >= period_start)
        if period_end:
            conditions.append(UsageMetric.period_end <= period_end)
        result = await self.session.execute(
            select(UsageMetric).where(*conditions).order_by(UsageMetric.period_start.desc())
        )
        return list(result.scalars().all())

    async def analytics_rows(
        self,
        tenant_id: uuid.UUID,
        metric_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[tuple[datetime, str, Optional[str], int]]:
        """(period_start, metric, unit, value) per sample starting in ``[start, end)``."""
        conditions = [UsageMetric.tenant_id == tenant_id]
        if metric_type:
            conditions.append(UsageMetric.metric_type == metric_type)
        if start:
            conditions.append(UsageMetric.period_start >= start)
        if end:
            conditions.append(UsageMetric.period_start < end)
        result = await self.session.execute(
            select(
                UsageMetric.period_start,
                UsageMetric.metric_type,
                UsageMetric.metric_unit,
                UsageMetric.metric_value,
            ).where(*conditions)
        )
        return [tuple(row) for row in result.all()]

    async def add_flag(
        self,
        tenant_id: uuid.UUID,
        metric_type: str,
        period_start: datetime,
        event_type: str,
    ) -> Optional[UsageLimitFlag]:
        """Claim the overage flag for a period. None if it was already claimed."""
        try:
            async with self.session.begin_nested():
                flag = UsageLimitFlag(
                    tenant_id=tenant_id,
                    metric_type=metric_type,
                    period_start=period_start,
                    event_type=event_type,
                )
                self.session.add(flag)
        except IntegrityError:
            return None
        return flag


class BillingEventRepository:
    """Repository for billing events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self, tenant_id: uuid.UUID, event_type: str, event_data: dict[str, Any]
    ) -> BillingEvent:
        event = BillingEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            event_data=event_data,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get(self, tenant_id: uuid.UUID, event_id: uuid.UUID) -> Optional[BillingEvent]:
        result = await self.session.execute(
            select(BillingEvent).where(
                BillingEvent.id == event_id,
                BillingEvent.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        event_type: Optional[str] = None,
        processed: Optional[bool] = None,
        limit: int = 100,
    ) -> list[BillingEvent]:
        conditions = [BillingEvent.tenant_id == tenant_id]
        if event_type:
            conditions.append(BillingEvent.event_type == event_type)
        if processed is not None:
            conditions.append(BillingEvent.processed == processed)
        result = await self.session.execute(
            select(BillingEvent)
            .where(*conditions)
            .order_by(BillingEvent.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_unprocessed(self, tenant_id: uuid.UUID) -> int:
        total = await self.session.scalar(
            select(func.count()).select_from(BillingEvent).where(
                BillingEvent.tenant_id == tenant_id,
                BillingEvent.processed == False,  # noqa: E712
            )
        )
        return total or 0


class SequenceRepository:
    """Per-tenant document number counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def next_value(self, tenant_id: uuid.UUID, name: str) -> int:
        """Atomically increment and return the counter, creating it on first use."""
        for _ in range(2):
            result = await self.session.execute(
                update(TenantSequence)
                .where(TenantSequence.tenant_id == tenant_id, TenantSequence.name == name)
                .values(last_value=TenantSequence.last_value + 1)
                .returning(TenantSequence.last_value)
                .execution_options(synchronize_session=False)
            )
            value = result.scalar_one_or_none()
            if value is not None:
                return value
            try:
                async with self.session.begin_nested():
                    self.session.add(TenantSequence(tenant_id=tenant_id, name=name, last_value=1))
                return 1
            except IntegrityError:
                # Another writer created the row first; increment theirs
                continue
        raise RuntimeError(f"Could not allocate {name} number for tenant {tenant_id}")


def format_number(prefix: str, value: int) -> str:
    """Render a document number like ``INV000001``."""
    return f"{prefix}{value:06d}"
