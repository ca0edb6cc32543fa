"""Invoice ledger.

Totals are always recomputed from line items. Payments change
``paid_amount`` only through the repository's guarded atomic increments,
after which the status is re-derived from the stored amounts.
"""

import logging
import math
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.config import settings
from clinic_saas.core.database import transactional
from clinic_saas.core.errors import (
    InvalidStateTransition,
    InvoiceClosed,
    NotFoundError,
    PaymentExceedsBalance,
    Result,
    ValidationError,
)
from clinic_saas.core.timeutils import month_bounds, utcnow
from clinic_saas.modules.billing.calculations import (
    TERMINAL_INVOICE_STATUSES,
    compute_invoice_totals,
    derive_invoice_status,
    price_line_item,
)
from clinic_saas.modules.billing.events import BillingEventLog
from clinic_saas.modules.billing.models import (
    BillingEventType,
    CLOSED_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
    LineItemType,
)
from clinic_saas.modules.billing.money import from_minor, round_half_up, to_minor
from clinic_saas.modules.billing.repository import (
    InvoiceRepository,
    SequenceRepository,
    format_number,
)
from clinic_saas.modules.billing.schemas import (
    LineItemCreate,
    LineItemUpdate,
    Pagination,
    RevenueReportRow,
)

logger = logging.getLogger(__name__)

INVOICE_SEQUENCE = "invoice"
INVOICE_PREFIX = "INV"


def build_line_item(item: LineItemCreate, currency: str) -> dict[str, Any]:
    """Convert an input line item to its stored, priced form."""
    stored = {
        "type": LineItemType(item.type).value,
        "description": item.description,
        "code": item.code,
        "quantity": str(item.quantity),
        "unit_price": to_minor(item.unit_price, currency),
        "discount": to_minor(item.discount, currency),
        "tax_rate": str(item.tax_rate),
    }
    return price_line_item(stored)


def paginate(page: int, limit: int, total: int) -> Pagination:
    return Pagination(
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if limit else 0,
    )


class InvoiceLedger:
    """Creates invoices, edits their lines and applies payments to them."""

    def __init__(
        self,
        session: AsyncSession,
        invoice_repo: Optional[InvoiceRepository] = None,
        sequences: Optional[SequenceRepository] = None,
        events: Optional[BillingEventLog] = None,
        due_days: Optional[int] = None,
    ):
        self.session = session
        self.invoice_repo = invoice_repo or InvoiceRepository(session)
        self.sequences = sequences or SequenceRepository(session)
        self.events = events or BillingEventLog(session)
        self.due_days = settings.INVOICE_DUE_DAYS if due_days is None else due_days

    # ==================== Reads ====================

    async def get_invoice(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Optional[Invoice]:
        return await self.invoice_repo.get(tenant_id, invoice_id)

    async def list_invoices(
        self,
        tenant_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> tuple[list[Invoice], Pagination]:
        items, total = await self.invoice_repo.list_for_tenant(
            tenant_id, page=page, limit=limit, status=status,
            date_from=date_from, date_to=date_to,
        )
        return items, paginate(page, limit, total)

    async def outstanding_balance(self, tenant_id: uuid.UUID) -> int:
        return await self.invoice_repo.outstanding_balance(tenant_id)

    async def count_by_status(self, tenant_id: uuid.UUID) -> dict[str, int]:
        return await self.invoice_repo.count_by_status(tenant_id)

    # ==================== Creation & edits ====================

    @transactional
    async def create_invoice(
        self,
        tenant_id: uuid.UUID,
        line_items: Sequence[LineItemCreate],
        due_date: Optional[date] = None,
        currency: Optional[str] = None,
        discount_amount: Decimal = Decimal("0"),
        subscription_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> Result[Invoice]:
        """Create a draft invoice from line items."""
        currency = (currency or settings.DEFAULT_CURRENCY).upper()
        if discount_amount < 0:
            return Result.failure(ValidationError("discount_amount cannot be negative"))

        items = [build_line_item(item, currency) for item in line_items]
        error = self._check_line_totals(items)
        if error is not None:
            return Result.failure(error)

        totals = compute_invoice_totals(items, to_minor(discount_amount, currency))
        if totals.total_amount < 0:
            return Result.failure(
                ValidationError("Invoice total cannot be negative", {"total": totals.total_amount})
            )

        sequence = await self.sequences.next_value(tenant_id, INVOICE_SEQUENCE)
        invoice = await self.invoice_repo.create(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            invoice_number=format_number(INVOICE_PREFIX, sequence),
            status=InvoiceStatus.DRAFT.value,
            currency=currency,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            discount_amount=totals.discount_amount,
            total_amount=totals.total_amount,
            paid_amount=0,
            due_date=due_date or utcnow().date() + timedelta(days=self.due_days),
            description=description,
            line_items=items,
        )

        await self.events.append(
            tenant_id,
            BillingEventType.INVOICE_CREATED,
            {
                "invoiceId": invoice.id,
                "invoiceNumber": invoice.invoice_number,
                "totalAmount": invoice.total_amount,
                "currency": currency,
            },
        )
        logger.info(
            "Invoice created",
            extra={"tenant_id": str(tenant_id), "invoice_number": invoice.invoice_number},
        )
        return Result.success(invoice)

    @transactional
    async def add_line_item(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, item: LineItemCreate
    ) -> Result[Invoice]:
        result = await self._get_draft(tenant_id, invoice_id)
        if not result.ok:
            return result
        invoice = result.value
        items = [dict(existing) for existing in invoice.line_items or []]
        items.append(build_line_item(item, invoice.currency))
        return await self._replace_line_items(invoice, items)

    @transactional
    async def update_line_item(
        self,
        tenant_id: uuid.UUID,
        invoice_id: uuid.UUID,
        index: int,
        data: LineItemUpdate,
    ) -> Result[Invoice]:
        result = await self._get_draft(tenant_id, invoice_id)
        if not result.ok:
            return result
        invoice = result.value
        items = [dict(existing) for existing in invoice.line_items or []]
        if not 0 <= index < len(items):
            return Result.failure(NotFoundError("Line item not found", {"index": index}))

        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return Result.failure(ValidationError("No fields to update"))
        item = items[index]
        for key, value in changes.items():
            if key in ("unit_price", "discount"):
                item[key] = to_minor(value, invoice.currency)
            elif key in ("quantity", "tax_rate"):
                item[key] = str(value)
            elif key == "type":
                item[key] = LineItemType(value).value
            else:
                item[key] = value
        items[index] = price_line_item(item)
        return await self._replace_line_items(invoice, items)

    @transactional
    async def remove_line_item(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, index: int
    ) -> Result[Invoice]:
        result = await self._get_draft(tenant_id, invoice_id)
        if not result.ok:
            return result
        invoice = result.value
        items = [dict(existing) for existing in invoice.line_items or []]
        if not 0 <= index < len(items):
            return Result.failure(NotFoundError("Line item not found", {"index": index}))
        del items[index]
        return await self._replace_line_items(invoice, items)

    # ==================== Status changes ====================

    @transactional
    async def send_invoice(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Result[Invoice]:
        """Issue a draft invoice to the patient or payer."""
        invoice = await self.invoice_repo.get(tenant_id, invoice_id)
        if invoice is None:
            return Result.failure(NotFoundError("Invoice not found"))
        if invoice.status != InvoiceStatus.DRAFT.value:
            return Result.failure(
                InvalidStateTransition(
                    "Only draft invoices can be sent", {"status": invoice.status}
                )
            )
        invoice.sent_at = utcnow()
        invoice.status = derive_invoice_status(
            invoice.total_amount,
            invoice.paid_amount,
            invoice.due_date,
            InvoiceStatus.OPEN,
            utcnow().date(),
        ).value
        await self.invoice_repo.save(invoice)
        await self.events.append(
            tenant_id,
            BillingEventType.INVOICE_SENT,
            {"invoiceId": invoice.id, "invoiceNumber": invoice.invoice_number},
        )
        return Result.success(invoice)

    @transactional
    async def cancel_invoice(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Result[Invoice]:
        return await self._close(
            tenant_id, invoice_id, InvoiceStatus.VOID, BillingEventType.INVOICE_CANCELLED
        )

    @transactional
    async def write_off(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Result[Invoice]:
        return await self._close(
            tenant_id, invoice_id, InvoiceStatus.WRITTEN_OFF, BillingEventType.INVOICE_WRITTEN_OFF
        )

    @transactional
    async def mark_uncollectible(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID
    ) -> Result[Invoice]:
        return await self._close(
            tenant_id, invoice_id, InvoiceStatus.UNCOLLECTIBLE, BillingEventType.INVOICE_WRITTEN_OFF
        )

    # ==================== Payments ====================

    @transactional
    async def apply_payment(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, amount: int
    ) -> Result[Invoice]:
        """Add ``amount`` minor units to the invoice's paid amount.

        The increment is a single guarded UPDATE; the invoice is only read
        afterwards, to classify a rejection or re-derive its status.
        """
        if amount <= 0:
            return Result.failure(ValidationError("Payment amount must be positive"))

        applied = await self.invoice_repo.increment_paid(tenant_id, invoice_id, amount)
        invoice = await self.invoice_repo.get(tenant_id, invoice_id)
        if invoice is None:
            return Result.failure(NotFoundError("Invoice not found"))
        if not applied:
            if invoice.status in CLOSED_INVOICE_STATUSES:
                return Result.failure(
                    InvoiceClosed("Invoice is closed", {"status": invoice.status})
                )
            return Result.failure(
                PaymentExceedsBalance(
                    "Payment exceeds invoice balance",
                    {"balance": invoice.balance_amount, "amount": amount},
                )
            )

        await self._rederive(invoice)
        return Result.success(invoice)

    @transactional
    async def reverse_payment(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, amount: int
    ) -> Result[Invoice]:
        """Take ``amount`` minor units back off the invoice's paid amount."""
        if amount <= 0:
            return Result.failure(ValidationError("Reversal amount must be positive"))

        reversed_ = await self.invoice_repo.decrement_paid(tenant_id, invoice_id, amount)
        invoice = await self.invoice_repo.get(tenant_id, invoice_id)
        if invoice is None:
            return Result.failure(NotFoundError("Invoice not found"))
        if not reversed_:
            if InvoiceStatus(invoice.status) in TERMINAL_INVOICE_STATUSES:
                return Result.failure(
                    InvoiceClosed("Invoice is closed", {"status": invoice.status})
                )
            return Result.failure(
                ValidationError(
                    "Reversal exceeds amount paid",
                    {"paid": invoice.paid_amount, "amount": amount},
                )
            )

        await self._rederive(invoice)
        return Result.success(invoice)

    @transactional
    async def refresh_overdue(
        self, tenant_id: uuid.UUID, today: Optional[date] = None
    ) -> Result[int]:
        """Re-derive unpaid invoices past their due date. Returns how many changed."""
        today = today or utcnow().date()
        changed = 0
        for invoice in await self.invoice_repo.list_past_due(tenant_id, today):
            if await self._rederive(invoice, today):
                changed += 1
        return Result.success(changed)

    # ==================== Reports ====================

    async def revenue_report(
        self,
        tenant_id: uuid.UUID,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> Result[list[RevenueReportRow]]:
        """Invoiced, collected and outstanding amounts per month, newest first.

        Invoices count toward the calendar month they were created in and
        are grouped by the plan they bill and their currency. Each bound
        includes the whole month it falls in. Voided invoices are left out.
        """
        if period_start and period_end and period_end < period_start:
            return Result.failure(ValidationError("period_end must not be before period_start"))
        start = month_bounds(datetime.combine(period_start, time()))[0] if period_start else None
        end = month_bounds(datetime.combine(period_end, time()))[1] if period_end else None

        groups: dict[tuple[date, Optional[str], str], list[tuple[str, int, int]]] = defaultdict(list)
        for created_at, plan_name, currency, status, total, paid in (
            await self.invoice_repo.revenue_rows(tenant_id, start, end)
        ):
            month = date(created_at.year, created_at.month, 1)
            groups[(month, plan_name, currency)].append((status, total, paid))

        rows = []
        for (month, plan_name, currency), invoices in groups.items():
            total = sum(amount for _, amount, _ in invoices)
            unsettled = [
                (status, amount, paid)
                for status, amount, paid in invoices
                if status not in CLOSED_INVOICE_STATUSES
            ]
            rows.append(
                RevenueReportRow(
                    month=month,
                    plan_name=plan_name,
                    currency=currency,
                    invoice_count=len(invoices),
                    total_revenue=from_minor(total, currency),
                    paid_revenue=from_minor(sum(paid for _, _, paid in invoices), currency),
                    outstanding_revenue=from_minor(
                        sum(amount - paid for _, amount, paid in unsettled), currency
                    ),
                    average_invoice_amount=from_minor(
                        round_half_up(Decimal(total) / len(invoices)), currency
                    ),
                    paid_invoices=sum(
                        1 for status, _, _ in invoices if status == InvoiceStatus.PAID.value
                    ),
                    open_invoices=sum(
                        1 for status, _, _ in unsettled if status != InvoiceStatus.DRAFT.value
                    ),
                )
            )
        rows.sort(key=lambda row: (row.plan_name or "", row.currency))
        rows.sort(key=lambda row: row.month, reverse=True)
        return Result.success(rows)

    # ==================== Helpers ====================

    async def _rederive(self, invoice: Invoice, today: Optional[date] = None) -> bool:
        """Re-derive and persist the status. Returns True if it changed."""
        new_status = derive_invoice_status(
            invoice.total_amount,
            invoice.paid_amount,
            invoice.due_date,
            invoice.status,
            today or utcnow().date(),
        ).value
        if new_status == invoice.status:
            return False

        invoice.status = new_status
        if new_status == InvoiceStatus.PAID.value and invoice.paid_at is None:
            invoice.paid_at = utcnow()
            await self.events.append(
                invoice.tenant_id,
                BillingEventType.INVOICE_PAID,
                {
                    "invoiceId": invoice.id,
                    "invoiceNumber": invoice.invoice_number,
                    "paidAmount": invoice.paid_amount,
                },
            )
        await self.invoice_repo.save(invoice)
        return True

    async def _get_draft(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Result[Invoice]:
        invoice = await self.invoice_repo.get(tenant_id, invoice_id)
        if invoice is None:
            return Result.failure(NotFoundError("Invoice not found"))
        if invoice.status != InvoiceStatus.DRAFT.value:
            return Result.failure(
                InvoiceClosed("Line items can only change on draft invoices", {"status": invoice.status})
            )
        return Result.success(invoice)

    def _check_line_totals(self, items: Sequence[dict[str, Any]]) -> Optional[ValidationError]:
        for index, item in enumerate(items):
            if item["total"] < 0:
                return ValidationError(
                    "Line item total cannot be negative", {"index": index}
                )
        return None

    async def _replace_line_items(
        self, invoice: Invoice, items: list[dict[str, Any]]
    ) -> Result[Invoice]:
        error = self._check_line_totals(items)
        if error is not None:
            return Result.failure(error)
        totals = compute_invoice_totals(items, invoice.discount_amount)
        if totals.total_amount < invoice.paid_amount or totals.total_amount < 0:
            return Result.failure(
                ValidationError(
                    "Invoice total cannot drop below the amount paid",
                    {"total": totals.total_amount, "paid": invoice.paid_amount},
                )
            )
        invoice.line_items = items
        invoice.subtotal = totals.subtotal
        invoice.tax_amount = totals.tax_amount
        invoice.total_amount = totals.total_amount
        invoice.version = invoice.version + 1
        await self.invoice_repo.save(invoice)
        return Result.success(invoice)

    async def _close(
        self,
        tenant_id: uuid.UUID,
        invoice_id: uuid.UUID,
        target: InvoiceStatus,
        event_type: BillingEventType,
    ) -> Result[Invoice]:
        invoice = await self.invoice_repo.get(tenant_id, invoice_id)
        if invoice is None:
            return Result.failure(NotFoundError("Invoice not found"))
        if invoice.status in CLOSED_INVOICE_STATUSES:
            return Result.failure(
                InvoiceClosed("Invoice is already closed", {"status": invoice.status})
            )
        previous = invoice.status
        invoice.status = target.value
        invoice.closed_at = utcnow()
        await self.invoice_repo.save(invoice)
        await self.events.append(
            tenant_id,
            event_type,
            {
                "invoiceId": invoice.id,
                "invoiceNumber": invoice.invoice_number,
                "fromStatus": previous,
                "status": target.value,
                "balance": invoice.balance_amount,
            },
        )
        return Result.success(invoice)
