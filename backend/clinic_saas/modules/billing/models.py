"""Billing models for plans, subscriptions, invoices, payments and usage.

All money columns hold integer minor units (cents for USD). All rows except
plans are tenant-scoped and every query filters on ``tenant_id``.
"""

import uuid
from datetime import datetime, date
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column

from clinic_saas.core.database import Base
from clinic_saas.core.timeutils import utcnow
from clinic_saas.modules.billing.limits import PlanLimits


class BillingCycle(str, Enum):
    """Plan billing cycles."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class InvoiceStatus(str, Enum):
    """Invoice status values."""
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    VOID = "void"
    WRITTEN_OFF = "written_off"
    UNCOLLECTIBLE = "uncollectible"


class LineItemType(str, Enum):
    """Invoice line item categories."""
    CONSULTATION = "consultation"
    PROCEDURE = "procedure"
    MEDICATION = "medication"
    LAB_TEST = "lab_test"
    IMAGING = "imaging"
    SUPPLIES = "supplies"
    SUBSCRIPTION = "subscription"
    OTHER = "other"


class PaymentStatus(str, Enum):
    """Payment status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class AllocationKind(str, Enum):
    """Allocation ledger entry kinds."""
    ALLOCATION = "allocation"
    REVERSAL = "reversal"


class BillingEventType(str, Enum):
    """Billing event types appended to the event log."""
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_CANCELLED = "invoice.cancelled"
    INVOICE_WRITTEN_OFF = "invoice.written_off"
    INVOICE_PAID = "invoice.paid"
    PAYMENT_CREATED = "payment.created"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_ALLOCATED = "payment.allocated"
    PAYMENT_ALLOCATION_REVERSED = "payment.allocation_reversed"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"


# Invoices in these states accept no payments and no monetary edits
CLOSED_INVOICE_STATUSES = frozenset({
    InvoiceStatus.PAID.value,
    InvoiceStatus.VOID.value,
    InvoiceStatus.WRITTEN_OFF.value,
    InvoiceStatus.UNCOLLECTIBLE.value,
})


class Plan(Base):
    """Subscription plan in the catalog."""

    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (in minor units)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    setup_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    billing_cycle: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingCycle.MONTHLY.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    features: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    limits: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, slug={self.slug}, price={self.price})>"

    @property
    def plan_limits(self) -> PlanLimits:
        """Validated limits for this plan."""
        return PlanLimits.from_storage(self.limits)

    def has_feature(self, feature: str) -> bool:
        return feature in (self.features or [])


class Subscription(Base):
    """A tenant's binding to one plan. One row per tenant, never deleted."""

    __tablename__ = "tenant_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_plans.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.TRIAL.value, index=True
    )

    current_period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)  # in minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_billing_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    past_due_since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Plan change tracking; usage periods begun before the change keep the old limits
    previous_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    plan_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    usage_stats: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, tenant={self.tenant_id}, status={self.status})>"

    def plan_id_for_period(self, period_start: datetime) -> uuid.UUID:
        """Plan whose limits govern a usage period starting at ``period_start``."""
        if (
            self.previous_plan_id is not None
            and self.plan_changed_at is not None
            and period_start < self.plan_changed_at
        ):
            return self.previous_plan_id
        return self.plan_id


class Invoice(Base):
    """Tenant invoice with ordered line items."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Amounts (in minor units)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Bumped by every monetary write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_tenant_number"),
        Index("ix_invoice_tenant_status", "tenant_id", "status"),
        Index("ix_invoice_tenant_due_date", "tenant_id", "due_date"),
    )

    @hybrid_property
    def balance_amount(self) -> int:
        return self.total_amount - self.paid_amount

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_INVOICE_STATUSES

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"


class Payment(Base):
    """Recorded payment. Gateway processing happens elsewhere."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, index=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    payment_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    method: Mapped[str] = mapped_column(String(50), nullable=False)

    # Amounts (in minor units)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    allocated_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refund_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Gateway result as reported by the payment gateway integration
    external_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "payment_number", name="uq_payment_tenant_number"),
        Index("ix_payment_tenant_status", "tenant_id", "status"),
    )

    @hybrid_property
    def net_amount(self) -> int:
        return self.amount - self.fee

    @property
    def refundable_amount(self) -> int:
        if self.status not in (
            PaymentStatus.SUCCEEDED.value,
            PaymentStatus.PARTIALLY_REFUNDED.value,
        ):
            return 0
        return self.amount - self.refund_amount

    @property
    def unallocated_amount(self) -> int:
        return self.amount - self.allocated_amount

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, number={self.payment_number}, status={self.status})>"


class PaymentAllocation(Base):
    """Append-only record assigning part of a payment to an invoice."""

    __tablename__ = "payment_allocations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AllocationKind.ALLOCATION.value
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # For reversals, the allocation being reversed
    reverses_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, unique=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<PaymentAllocation(id={self.id}, kind={self.kind}, amount={self.amount})>"


class UsageMetric(Base):
    """Write-once usage sample."""

    __tablename__ = "usage_metrics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    metric_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    metric_unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_usage_tenant_metric_period", "tenant_id", "metric_type", "period_start"),
    )

    def __repr__(self) -> str:
        return f"<UsageMetric(id={self.id}, type={self.metric_type}, value={self.metric_value})>"


class UsageLimitFlag(Base):
    """Marks a (tenant, metric, period) overage as already reported."""

    __tablename__ = "usage_limit_flags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    billing_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "metric_type", "period_start", "event_type",
            name="uq_usage_flag_period",
        ),
    )


class BillingEvent(Base):
    """Append-only billing fact. Only ``processed`` ever changes."""

    __tablename__ = "billing_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_billing_event_tenant_type", "tenant_id", "event_type"),
        Index("ix_billing_event_tenant_processed", "tenant_id", "processed"),
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(id={self.id}, type={self.event_type}, processed={self.processed})>"


class TenantSequence(Base):
    """Per-tenant counters for document numbers (INV, PAY)."""

    __tablename__ = "tenant_sequences"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(20), primary_key=True)
    last_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
