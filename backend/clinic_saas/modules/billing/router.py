"""API Router for billing.

Plan catalog reads are open; everything else runs in a resolved, rate
limited tenant context. Ledger results are unwrapped here so failures reach
the ServiceError handler.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from clinic_saas.core.errors import NotFoundError
from clinic_saas.modules.billing.dependencies import get_billing_service, require_feature
from clinic_saas.modules.billing.limits import MetricType
from clinic_saas.modules.billing.models import InvoiceStatus, PaymentStatus
from clinic_saas.modules.billing.schemas import (
    AllocationRequest,
    AllocationResponse,
    BillingEventResponse,
    BillingOverviewResponse,
    CurrentSubscriptionResponse,
    FeatureCheckResponse,
    InvoiceCreate,
    InvoiceListResponse,
    InvoiceResponse,
    LineItemCreate,
    LineItemUpdate,
    PaymentCreate,
    PaymentFailRequest,
    PaymentListResponse,
    PaymentResponse,
    PlanCreate,
    PlanListResponse,
    PlanResponse,
    PlanUpdate,
    RefundRequest,
    RevenueReportRow,
    ReverseAllocationRequest,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    SubscriptionUpdate,
    UsageAnalyticsRow,
    UsageLimitCheckResponse,
    UsageMetricResponse,
    UsageRecordCreate,
    UsageRecordResponse,
)
from clinic_saas.modules.billing.service import BillingService
from clinic_saas.modules.tenant.rate_limiter import enforce_rate_limit
from clinic_saas.modules.tenant.resolver import TenantContext, require_admin

router = APIRouter(prefix="/billing", tags=["billing"])


# ==================== Plans ====================

@router.get("/plans", response_model=PlanListResponse)
async def list_plans(service: BillingService = Depends(get_billing_service)):
    """List active public plans ordered by price."""
    plans = await service.catalog.list_public_plans()
    return PlanListResponse(plans=[PlanResponse.from_model(plan) for plan in plans])


@router.get("/plans/{slug}", response_model=PlanResponse)
async def get_plan(slug: str, service: BillingService = Depends(get_billing_service)):
    plan = await service.catalog.get_plan_by_slug(slug)
    if plan is None:
        raise NotFoundError("Plan not found", {"slug": slug})
    return PlanResponse.from_model(plan)


@router.post(
    "/plans",
    response_model=PlanResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_plan(data: PlanCreate, service: BillingService = Depends(get_billing_service)):
    plan = (await service.catalog.create_plan(data)).unwrap()
    return PlanResponse.from_model(plan)


@router.put(
    "/plans/{plan_id}",
    response_model=PlanResponse,
    dependencies=[Depends(require_admin)],
)
async def update_plan(
    plan_id: uuid.UUID,
    data: PlanUpdate,
    service: BillingService = Depends(get_billing_service),
):
    plan = (await service.catalog.update_plan(plan_id, data)).unwrap()
    return PlanResponse.from_model(plan)


# ==================== Subscriptions ====================

@router.get("/subscriptions/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    current = await service.subscriptions.get_current(tenant.id)
    if current is None:
        raise NotFoundError("No subscription found")
    subscription, plan = current
    return CurrentSubscriptionResponse(
        subscription=SubscriptionResponse.from_model(subscription),
        plan=PlanResponse.from_model(plan),
    )


@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    data: SubscriptionCreate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.subscriptions.create_subscription(
        tenant.id,
        data.plan_id,
        billing_cycle=data.billing_cycle,
        trial_days=data.trial_days,
        payment_method_id=data.payment_method_id,
        auto_renew=data.auto_renew,
    )
    return SubscriptionResponse.from_model(result.unwrap())


@router.put("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: uuid.UUID,
    data: SubscriptionUpdate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.subscriptions.update_subscription(tenant.id, subscription_id, data)
    return SubscriptionResponse.from_model(result.unwrap())


@router.delete("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    data: Optional[SubscriptionCancel] = None,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    reason = data.reason if data else None
    result = await service.subscriptions.cancel_subscription(tenant.id, subscription_id, reason)
    return SubscriptionResponse.from_model(result.unwrap())


# ==================== Invoices ====================

@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[InvoiceStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    invoices, pagination = await service.invoices.list_invoices(
        tenant.id,
        page=page,
        limit=limit,
        status=status_filter.value if status_filter else None,
        date_from=date_from,
        date_to=date_to,
    )
    return InvoiceListResponse(
        items=[InvoiceResponse.from_model(invoice) for invoice in invoices],
        pagination=pagination,
    )


@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    data: InvoiceCreate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.create_invoice(
        tenant.id,
        data.line_items,
        due_date=data.due_date,
        currency=data.currency,
        discount_amount=data.discount_amount,
        subscription_id=data.subscription_id,
        description=data.description,
    )
    return InvoiceResponse.from_model(result.unwrap())


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    invoice = await service.invoices.get_invoice(tenant.id, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found")
    return InvoiceResponse.from_model(invoice)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceResponse)
async def send_invoice(
    invoice_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.send_invoice(tenant.id, invoice_id)
    return InvoiceResponse.from_model(result.unwrap())


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.cancel_invoice(tenant.id, invoice_id)
    return InvoiceResponse.from_model(result.unwrap())


@router.post("/invoices/{invoice_id}/write-off", response_model=InvoiceResponse)
async def write_off_invoice(
    invoice_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.write_off(tenant.id, invoice_id)
    return InvoiceResponse.from_model(result.unwrap())


@router.post("/invoices/{invoice_id}/uncollectible", response_model=InvoiceResponse)
async def mark_invoice_uncollectible(
    invoice_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.mark_uncollectible(tenant.id, invoice_id)
    return InvoiceResponse.from_model(result.unwrap())


@router.post("/invoices/{invoice_id}/items", response_model=InvoiceResponse)
async def add_line_item(
    invoice_id: uuid.UUID,
    item: LineItemCreate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.add_line_item(tenant.id, invoice_id, item)
    return InvoiceResponse.from_model(result.unwrap())


@router.put("/invoices/{invoice_id}/items/{index}", response_model=InvoiceResponse)
async def update_line_item(
    invoice_id: uuid.UUID,
    index: int,
    data: LineItemUpdate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.update_line_item(tenant.id, invoice_id, index, data)
    return InvoiceResponse.from_model(result.unwrap())


@router.delete("/invoices/{invoice_id}/items/{index}", response_model=InvoiceResponse)
async def remove_line_item(
    invoice_id: uuid.UUID,
    index: int,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.invoices.remove_line_item(tenant.id, invoice_id, index)
    return InvoiceResponse.from_model(result.unwrap())


# ==================== Payments ====================

@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    invoice_id: Optional[uuid.UUID] = None,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    payments, pagination = await service.payments.list_payments(
        tenant.id,
        page=page,
        limit=limit,
        status=status_filter.value if status_filter else None,
        invoice_id=invoice_id,
    )
    return PaymentListResponse(
        items=[PaymentResponse.from_model(payment) for payment in payments],
        pagination=pagination,
    )


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    data: PaymentCreate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.record_payment(
        tenant.id,
        data.amount,
        data.method,
        invoice_id=data.invoice_id,
        currency=data.currency,
        fee=data.fee,
        external_payment_id=data.external_payment_id,
        gateway_response=data.gateway_response,
    )
    return PaymentResponse.from_model(result.unwrap())


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    payment = await service.payments.get_payment(tenant.id, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return PaymentResponse.from_model(payment)


@router.post("/payments/{payment_id}/processing", response_model=PaymentResponse)
async def mark_payment_processing(
    payment_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.mark_processing(tenant.id, payment_id)
    return PaymentResponse.from_model(result.unwrap())


@router.post("/payments/{payment_id}/succeed", response_model=PaymentResponse)
async def mark_payment_succeeded(
    payment_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.mark_succeeded(tenant.id, payment_id)
    return PaymentResponse.from_model(result.unwrap())


@router.post("/payments/{payment_id}/fail", response_model=PaymentResponse)
async def mark_payment_failed(
    payment_id: uuid.UUID,
    data: PaymentFailRequest,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.mark_failed(tenant.id, payment_id, data.reason)
    return PaymentResponse.from_model(result.unwrap())


@router.post("/payments/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.cancel_payment(tenant.id, payment_id)
    return PaymentResponse.from_model(result.unwrap())


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: uuid.UUID,
    data: RefundRequest,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.refund(tenant.id, payment_id, data.amount, data.reason)
    return PaymentResponse.from_model(result.unwrap())


@router.get("/payments/{payment_id}/allocations", response_model=list[AllocationResponse])
async def list_payment_allocations(
    payment_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    """Allocation and reversal rows for a payment, oldest first."""
    payment = await service.payments.get_payment(tenant.id, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    allocations = await service.payments.list_allocations(tenant.id, payment_id)
    return [AllocationResponse.from_model(row, payment.currency) for row in allocations]


@router.post(
    "/payments/{payment_id}/allocations",
    response_model=list[AllocationResponse],
    status_code=status.HTTP_201_CREATED,
)
async def allocate_payment(
    payment_id: uuid.UUID,
    data: AllocationRequest,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.payments.allocate(
        tenant.id,
        payment_id,
        [(item.invoice_id, item.amount) for item in data.allocations],
    )
    allocations = result.unwrap()
    payment = await service.payments.get_payment(tenant.id, payment_id)
    return [AllocationResponse.from_model(row, payment.currency) for row in allocations]


@router.post("/allocations/{allocation_id}/reverse", response_model=AllocationResponse)
async def reverse_allocation(
    allocation_id: uuid.UUID,
    data: Optional[ReverseAllocationRequest] = None,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    reason = data.reason if data else None
    reversal = (await service.payments.reverse_allocation(tenant.id, allocation_id, reason)).unwrap()
    payment = await service.payments.get_payment(tenant.id, reversal.payment_id)
    return AllocationResponse.from_model(reversal, payment.currency)


# ==================== Usage ====================

@router.get("/usage", response_model=list[UsageMetricResponse])
async def list_usage(
    metric_type: Optional[MetricType] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    metrics = await service.usage.list_usage(
        tenant.id,
        metric_type=metric_type.value if metric_type else None,
        period_start=period_start,
        period_end=period_end,
    )
    return [UsageMetricResponse.model_validate(metric) for metric in metrics]


@router.post("/usage", response_model=UsageRecordResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    data: UsageRecordCreate,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.usage.record_usage(
        tenant.id,
        data.metric_type,
        data.value,
        unit=data.unit,
        period_start=data.period_start,
        period_end=data.period_end,
        subscription_id=data.subscription_id,
    )
    metric, flagged = result.unwrap()
    return UsageRecordResponse(
        metric=UsageMetricResponse.model_validate(metric),
        limit_exceeded=flagged,
    )


@router.get("/limits/{metric_type}", response_model=UsageLimitCheckResponse)
async def check_usage_limit(
    metric_type: MetricType,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    return (await service.usage.check_usage_limits(tenant.id, metric_type)).unwrap()


# ==================== Events ====================

@router.get("/events", response_model=list[BillingEventResponse])
async def list_events(
    event_type: Optional[str] = None,
    processed: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=500),
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    events = await service.events.list_events(
        tenant.id, event_type=event_type, processed=processed, limit=limit
    )
    return [BillingEventResponse.from_model(event) for event in events]


@router.post("/events/{event_id}/processed", response_model=BillingEventResponse)
async def mark_event_processed(
    event_id: uuid.UUID,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    event = (await service.events.mark_processed(tenant.id, event_id)).unwrap()
    return BillingEventResponse.from_model(event)


# ==================== Summaries ====================

@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    summary = await service.subscriptions.status_summary(tenant.id)
    if summary is None:
        raise NotFoundError("No subscription found")
    return summary


@router.get("/features/{feature}", response_model=FeatureCheckResponse)
async def check_feature(
    feature: str,
    tenant: TenantContext = Depends(enforce_rate_limit),
    service: BillingService = Depends(get_billing_service),
):
    return await service.check_feature(tenant.id, feature)


@router.get("/overview", response_model=BillingOverviewResponse)
async def get_overview(
    tenant: TenantContext = Depends(require_feature("analytics")),
    service: BillingService = Depends(get_billing_service),
):
    """Per-tenant billing overview. Requires a plan with analytics."""
    return await service.overview(tenant.id)


# ==================== Reports ====================

@router.get("/reports/revenue", response_model=list[RevenueReportRow])
async def get_revenue_report(
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    tenant: TenantContext = Depends(require_feature("analytics")),
    service: BillingService = Depends(get_billing_service),
):
    """Monthly revenue by plan and currency. Requires a plan with analytics."""
    result = await service.invoices.revenue_report(tenant.id, period_start, period_end)
    return result.unwrap()


@router.get("/reports/usage", response_model=list[UsageAnalyticsRow])
async def get_usage_analytics(
    metric_type: Optional[MetricType] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    tenant: TenantContext = Depends(require_feature("analytics")),
    service: BillingService = Depends(get_billing_service),
):
    """Daily usage per metric. Requires a plan with analytics."""
    result = await service.usage.usage_analytics(
        tenant.id, metric_type=metric_type, period_start=period_start, period_end=period_end
    )
    return result.unwrap()
