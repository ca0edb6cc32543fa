"""Pydantic schemas for the billing API.

Amounts cross the API as Decimals in major units; models store minor units.
Response schemas convert with ``from_model``.
"""

import math
import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Any

from pydantic import BaseModel, Field, model_validator

from clinic_saas.modules.billing.limits import MetricType, PlanLimits
from clinic_saas.modules.billing.models import (
    BillingCycle,
    BillingEvent,
    Invoice,
    LineItemType,
    Payment,
    PaymentAllocation,
    Plan,
    Subscription,
    SubscriptionStatus,
    UsageMetric,
)
from clinic_saas.modules.billing.money import from_minor


# ==================== Plans ====================

class PlanCreate(BaseModel):
    """Schema for creating a plan."""
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9\-]*$")
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    currency: str = Field("USD", min_length=3, max_length=3)
    features: list[str] = Field(default_factory=list)
    limits: PlanLimits = Field(default_factory=PlanLimits)
    trial_days: int = Field(0, ge=0, le=365)
    setup_fee: Decimal = Field(Decimal("0"), ge=0)
    is_active: bool = True
    is_public: bool = True


class PlanUpdate(BaseModel):
    """Partial plan update; only provided fields change."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    billing_cycle: Optional[BillingCycle] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    features: Optional[list[str]] = None
    limits: Optional[PlanLimits] = None
    trial_days: Optional[int] = Field(None, ge=0, le=365)
    setup_fee: Optional[Decimal] = Field(None, ge=0)
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None


class PlanResponse(BaseModel):
    """Response schema for a plan."""
    id: uuid.UUID
    name: str
    slug: str
    description: Optional[str]
    price: Decimal
    setup_fee: Decimal
    billing_cycle: str
    currency: str
    features: list[str]
    limits: dict[str, int]
    trial_days: int
    is_active: bool
    is_public: bool

    @classmethod
    def from_model(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            slug=plan.slug,
            description=plan.description,
            price=from_minor(plan.price, plan.currency),
            setup_fee=from_minor(plan.setup_fee, plan.currency),
            billing_cycle=plan.billing_cycle,
            currency=plan.currency,
            features=list(plan.features or []),
            limits=plan.plan_limits.to_storage(),
            trial_days=plan.trial_days,
            is_active=plan.is_active,
            is_public=plan.is_public,
        )


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


# ==================== Subscriptions ====================

class SubscriptionCreate(BaseModel):
    """Schema for subscribing the current tenant to a plan."""
    plan_id: uuid.UUID
    billing_cycle: Optional[BillingCycle] = Field(
        None, description="Defaults to the plan's billing cycle"
    )
    trial_days: Optional[int] = Field(
        None, ge=0, le=365, description="Defaults to the plan's trial days"
    )
    payment_method_id: Optional[str] = None
    auto_renew: bool = True


class SubscriptionUpdate(BaseModel):
    """Whitelisted subscription fields."""
    plan_id: Optional[uuid.UUID] = None
    status: Optional[SubscriptionStatus] = None
    auto_renew: Optional[bool] = None
    cancel_reason: Optional[str] = None


class SubscriptionCancel(BaseModel):
    reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    """Response schema for subscription."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    plan_id: uuid.UUID
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]
    billing_cycle: str
    price: Decimal
    currency: str
    auto_renew: bool
    next_billing_at: Optional[datetime]
    payment_method_id: Optional[str]
    previous_plan_id: Optional[uuid.UUID]
    plan_changed_at: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            tenant_id=subscription.tenant_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            cancelled_at=subscription.cancelled_at,
            cancel_reason=subscription.cancel_reason,
            billing_cycle=subscription.billing_cycle,
            price=from_minor(subscription.price, subscription.currency),
            currency=subscription.currency,
            auto_renew=subscription.auto_renew,
            next_billing_at=subscription.next_billing_at,
            payment_method_id=subscription.payment_method_id,
            previous_plan_id=subscription.previous_plan_id,
            plan_changed_at=subscription.plan_changed_at,
            created_at=subscription.created_at,
        )


class CurrentSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    plan: PlanResponse


class PlanSummary(BaseModel):
    name: str
    slug: str
    features: list[str]
    limits: dict[str, int]


class SubscriptionStatusResponse(BaseModel):
    """Subscription summary including days until renewal."""
    status: str
    plan: PlanSummary
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime]
    auto_renew: bool
    price: Decimal
    currency: str
    billing_cycle: str
    next_billing_at: Optional[datetime]
    days_until_renewal: Optional[int]

    @classmethod
    def build(
        cls, subscription: Subscription, plan: Plan, now: datetime
    ) -> "SubscriptionStatusResponse":
        days = None
        if subscription.next_billing_at is not None:
            seconds = (subscription.next_billing_at - now).total_seconds()
            days = max(0, math.ceil(seconds / 86400))
        return cls(
            status=subscription.status,
            plan=PlanSummary(
                name=plan.name,
                slug=plan.slug,
                features=list(plan.features or []),
                limits=plan.plan_limits.to_storage(),
            ),
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            auto_renew=subscription.auto_renew,
            price=from_minor(subscription.price, subscription.currency),
            currency=subscription.currency,
            billing_cycle=subscription.billing_cycle,
            next_billing_at=subscription.next_billing_at,
            days_until_renewal=days,
        )


# ==================== Invoices ====================

class LineItemCreate(BaseModel):
    """Invoice line item input."""
    type: LineItemType = LineItemType.OTHER
    description: str = Field(..., min_length=1, max_length=500)
    code: Optional[str] = Field(None, max_length=50)
    quantity: Decimal = Field(Decimal("1"), gt=0)
    unit_price: Decimal = Field(..., ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=1, description="Fraction, e.g. 0.10")


class LineItemUpdate(BaseModel):
    type: Optional[LineItemType] = None
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    code: Optional[str] = Field(None, max_length=50)
    quantity: Optional[Decimal] = Field(None, gt=0)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    discount: Optional[Decimal] = Field(None, ge=0)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=1)


class LineItemResponse(BaseModel):
    type: str
    description: str
    code: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    tax_rate: Decimal
    total: Decimal
    tax: Decimal


class InvoiceCreate(BaseModel):
    """Schema for creating an invoice."""
    line_items: list[LineItemCreate] = Field(..., min_length=1)
    due_date: Optional[date] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    subscription_id: Optional[uuid.UUID] = None
    description: Optional[str] = None


class InvoiceResponse(BaseModel):
    """Response schema for invoice."""
    id: uuid.UUID
    invoice_number: str
    status: str
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    due_date: date
    description: Optional[str]
    subscription_id: Optional[uuid.UUID]
    line_items: list[LineItemResponse]
    sent_at: Optional[datetime]
    paid_at: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_model(cls, invoice: Invoice) -> "InvoiceResponse":
        currency = invoice.currency
        return cls(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            status=invoice.status,
            currency=currency,
            subtotal=from_minor(invoice.subtotal, currency),
            tax_amount=from_minor(invoice.tax_amount, currency),
            discount_amount=from_minor(invoice.discount_amount, currency),
            total_amount=from_minor(invoice.total_amount, currency),
            paid_amount=from_minor(invoice.paid_amount, currency),
            balance_amount=from_minor(invoice.balance_amount, currency),
            due_date=invoice.due_date,
            description=invoice.description,
            subscription_id=invoice.subscription_id,
            line_items=[
                LineItemResponse(
                    type=item["type"],
                    description=item["description"],
                    code=item.get("code"),
                    quantity=Decimal(str(item["quantity"])),
                    unit_price=from_minor(item["unit_price"], currency),
                    discount=from_minor(item.get("discount", 0), currency),
                    tax_rate=Decimal(str(item.get("tax_rate", 0))),
                    total=from_minor(item["total"], currency),
                    tax=from_minor(item["tax"], currency),
                )
                for item in invoice.line_items or []
            ],
            sent_at=invoice.sent_at,
            paid_at=invoice.paid_at,
            created_at=invoice.created_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class InvoiceListResponse(BaseModel):
    items: list[InvoiceResponse]
    pagination: Pagination


# ==================== Payments ====================

class PaymentCreate(BaseModel):
    """Schema for recording a payment reported by a gateway or cashier."""
    amount: Decimal = Field(..., gt=0)
    method: str = Field(..., min_length=1, max_length=50)
    invoice_id: Optional[uuid.UUID] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    fee: Decimal = Field(Decimal("0"), ge=0)
    external_payment_id: Optional[str] = Field(None, max_length=255)
    gateway_response: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _fee_within_amount(self) -> "PaymentCreate":
        if self.fee > self.amount:
            raise ValueError("fee cannot exceed amount")
        return self


class PaymentFailRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = None


class AllocationItem(BaseModel):
    invoice_id: uuid.UUID
    amount: Decimal = Field(..., ge=0)


class AllocationRequest(BaseModel):
    allocations: list[AllocationItem] = Field(..., min_length=1)


class ReverseAllocationRequest(BaseModel):
    reason: Optional[str] = None


class PaymentResponse(BaseModel):
    """Response schema for payment."""
    id: uuid.UUID
    payment_number: str
    invoice_id: Optional[uuid.UUID]
    status: str
    method: str
    amount: Decimal
    currency: str
    fee: Decimal
    net_amount: Decimal
    allocated_amount: Decimal
    refund_amount: Decimal
    refund_reason: Optional[str]
    refunded_at: Optional[datetime]
    processed_at: Optional[datetime]
    failure_reason: Optional[str]
    external_payment_id: Optional[str]
    created_at: datetime

    @classmethod
    def from_model(cls, payment: Payment) -> "PaymentResponse":
        currency = payment.currency
        return cls(
            id=payment.id,
            payment_number=payment.payment_number,
            invoice_id=payment.invoice_id,
            status=payment.status,
            method=payment.method,
            amount=from_minor(payment.amount, currency),
            currency=currency,
            fee=from_minor(payment.fee, currency),
            net_amount=from_minor(payment.net_amount, currency),
            allocated_amount=from_minor(payment.allocated_amount, currency),
            refund_amount=from_minor(payment.refund_amount, currency),
            refund_reason=payment.refund_reason,
            refunded_at=payment.refunded_at,
            processed_at=payment.processed_at,
            failure_reason=payment.failure_reason,
            external_payment_id=payment.external_payment_id,
            created_at=payment.created_at,
        )


class PaymentListResponse(BaseModel):
    items: list[PaymentResponse]
    pagination: Pagination


class AllocationResponse(BaseModel):
    id: uuid.UUID
    payment_id: uuid.UUID
    invoice_id: uuid.UUID
    kind: str
    amount: Decimal
    reverses_id: Optional[uuid.UUID]
    reason: Optional[str]
    created_at: datetime

    @classmethod
    def from_model(cls, allocation: PaymentAllocation, currency: str) -> "AllocationResponse":
        return cls(
            id=allocation.id,
            payment_id=allocation.payment_id,
            invoice_id=allocation.invoice_id,
            kind=allocation.kind,
            amount=from_minor(allocation.amount, currency),
            reverses_id=allocation.reverses_id,
            reason=allocation.reason,
            created_at=allocation.created_at,
        )


# ==================== Usage ====================

class UsageRecordCreate(BaseModel):
    """Schema for recording a usage sample."""
    metric_type: MetricType
    value: int = Field(..., ge=0)
    unit: Optional[str] = Field(None, max_length=20)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    subscription_id: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def _period_order(self) -> "UsageRecordCreate":
        if (
            self.period_start is not None
            and self.period_end is not None
            and self.period_end <= self.period_start
        ):
            raise ValueError("period_end must be after period_start")
        return self


class UsageMetricResponse(BaseModel):
    id: uuid.UUID
    metric_type: str
    metric_value: int
    metric_unit: Optional[str]
    period_start: datetime
    period_end: datetime
    subscription_id: Optional[uuid.UUID]
    created_at: datetime

    class Config:
        from_attributes = True


class UsageRecordResponse(BaseModel):
    metric: UsageMetricResponse
    limit_exceeded: bool


class UsageLimitCheckResponse(BaseModel):
    """Current usage against the plan limit for one metric."""
    metric_type: str
    within_limit: bool
    current: int
    limit: int
    percentage: float


# ==================== Events ====================

class BillingEventResponse(BaseModel):
    id: uuid.UUID
    event_type: str
    event_data: dict[str, Any]
    processed: bool
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True

    @classmethod
    def from_model(cls, event: BillingEvent) -> "BillingEventResponse":
        return cls.model_validate(event)


# ==================== Reports ====================

class RevenueReportRow(BaseModel):
    """Invoiced and collected amounts for one month, plan and currency."""
    month: date
    plan_name: Optional[str] = Field(None, description="None for invoices not tied to a subscription")
    currency: str
    invoice_count: int
    total_revenue: Decimal
    paid_revenue: Decimal
    outstanding_revenue: Decimal
    average_invoice_amount: Decimal
    paid_invoices: int
    open_invoices: int


class UsageAnalyticsRow(BaseModel):
    """Usage samples for one metric, grouped by the day their period starts."""
    day: date
    metric_type: str
    metric_unit: Optional[str]
    total_usage: int
    average_usage: float
    peak_usage: int
    data_points: int


# ==================== Features & Overview ====================

class FeatureCheckResponse(BaseModel):
    feature: str
    has_access: bool
    plan: Optional[str]


class BillingOverviewResponse(BaseModel):
    """Per-tenant billing overview."""
    subscription: Optional[SubscriptionStatusResponse]
    currency: str
    outstanding_balance: Decimal
    invoice_counts: dict[str, int]
    unprocessed_events: int
    usage: list[UsageLimitCheckResponse]
