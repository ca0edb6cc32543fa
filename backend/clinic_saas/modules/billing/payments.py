"""Payment ledger.

Records payments reported by a gateway or cashier, drives their processing
states, allocates them to invoices and tracks refunds. Refunds never touch
invoice balances; only allocations and their reversals do.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.config import settings
from clinic_saas.core.database import transactional
from clinic_saas.core.errors import (
    ConflictError,
    InvalidStateTransition,
    InvoiceClosed,
    NotFoundError,
    RefundExceedsPayment,
    Result,
    ServiceError,
    ValidationError,
)
from clinic_saas.core.metrics import PAYMENTS_TOTAL
from clinic_saas.core.timeutils import utcnow
from clinic_saas.modules.billing.events import BillingEventLog
from clinic_saas.modules.billing.invoices import InvoiceLedger, paginate
from clinic_saas.modules.billing.models import (
    AllocationKind,
    BillingEventType,
    Payment,
    PaymentAllocation,
    PaymentStatus,
)
from clinic_saas.modules.billing.money import to_minor
from clinic_saas.modules.billing.repository import (
    AllocationRepository,
    PaymentRepository,
    REFUNDABLE_PAYMENT_STATUSES,
    SequenceRepository,
    format_number,
)
from clinic_saas.modules.billing.schemas import Pagination

logger = logging.getLogger(__name__)

PAYMENT_SEQUENCE = "payment"
PAYMENT_PREFIX = "PAY"

IN_FLIGHT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


class PaymentLedger:
    """Records, settles, allocates and refunds payments."""

    def __init__(
        self,
        session: AsyncSession,
        payment_repo: Optional[PaymentRepository] = None,
        allocation_repo: Optional[AllocationRepository] = None,
        invoices: Optional[InvoiceLedger] = None,
        sequences: Optional[SequenceRepository] = None,
        events: Optional[BillingEventLog] = None,
    ):
        self.session = session
        self.payment_repo = payment_repo or PaymentRepository(session)
        self.allocation_repo = allocation_repo or AllocationRepository(session)
        self.events = events or BillingEventLog(session)
        self.invoices = invoices or InvoiceLedger(session, events=self.events)
        self.sequences = sequences or SequenceRepository(session)

    # ==================== Reads ====================

    async def get_payment(self, tenant_id: uuid.UUID, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self.payment_repo.get(tenant_id, payment_id)

    async def list_payments(
        self,
        tenant_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        invoice_id: Optional[uuid.UUID] = None,
    ) -> tuple[list[Payment], Pagination]:
        items, total = await self.payment_repo.list_for_tenant(
            tenant_id, page=page, limit=limit, status=status, invoice_id=invoice_id
        )
        return items, paginate(page, limit, total)

    async def list_allocations(
        self, tenant_id: uuid.UUID, payment_id: uuid.UUID
    ) -> list[PaymentAllocation]:
        return await self.allocation_repo.list_for_payment(tenant_id, payment_id)

    # ==================== Recording & processing ====================

    @transactional
    async def record_payment(
        self,
        tenant_id: uuid.UUID,
        amount: Decimal,
        method: str,
        invoice_id: Optional[uuid.UUID] = None,
        currency: Optional[str] = None,
        fee: Decimal = Decimal("0"),
        external_payment_id: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Result[Payment]:
        """Record a pending payment, optionally linked to an invoice."""
        if invoice_id is not None:
            invoice = await self.invoices.get_invoice(tenant_id, invoice_id)
            if invoice is None:
                return Result.failure(NotFoundError("Invoice not found"))
            if invoice.is_closed:
                return Result.failure(
                    InvoiceClosed("Invoice is closed", {"status": invoice.status})
                )
            if currency is not None and currency.upper() != invoice.currency:
                return Result.failure(
                    ValidationError(
                        "Payment currency does not match invoice",
                        {"invoice_currency": invoice.currency},
                    )
                )
            currency = invoice.currency
        currency = (currency or settings.DEFAULT_CURRENCY).upper()

        amount_minor = to_minor(amount, currency)
        fee_minor = to_minor(fee, currency)
        if amount_minor <= 0:
            return Result.failure(ValidationError("Payment amount must be positive"))
        if fee_minor < 0 or fee_minor > amount_minor:
            return Result.failure(ValidationError("Fee must be between 0 and the payment amount"))

        sequence = await self.sequences.next_value(tenant_id, PAYMENT_SEQUENCE)
        payment = await self.payment_repo.create(
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            payment_number=format_number(PAYMENT_PREFIX, sequence),
            status=PaymentStatus.PENDING.value,
            method=method,
            amount=amount_minor,
            currency=currency,
            fee=fee_minor,
            allocated_amount=0,
            refund_amount=0,
            external_payment_id=external_payment_id,
            gateway_response=gateway_response,
        )

        await self.events.append(
            tenant_id,
            BillingEventType.PAYMENT_CREATED,
            {
                "paymentId": payment.id,
                "paymentNumber": payment.payment_number,
                "amount": payment.amount,
                "currency": currency,
                "invoiceId": invoice_id,
            },
        )
        PAYMENTS_TOTAL.labels(status=PaymentStatus.PENDING.value).inc()
        return Result.success(payment)

    @transactional
    async def mark_processing(self, tenant_id: uuid.UUID, payment_id: uuid.UUID) -> Result[Payment]:
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        if payment.status != PaymentStatus.PENDING.value:
            return Result.failure(self._bad_transition(payment, PaymentStatus.PROCESSING))
        payment.status = PaymentStatus.PROCESSING.value
        await self.payment_repo.save(payment)
        return Result.success(payment)

    @transactional
    async def mark_succeeded(
        self,
        tenant_id: uuid.UUID,
        payment_id: uuid.UUID,
        external_payment_id: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
    ) -> Result[Payment]:
        """Settle a payment. A linked invoice receives the full amount."""
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        if payment.status not in IN_FLIGHT_STATUSES:
            return Result.failure(self._bad_transition(payment, PaymentStatus.SUCCEEDED))

        payment.status = PaymentStatus.SUCCEEDED.value
        payment.processed_at = utcnow()
        if external_payment_id is not None:
            payment.external_payment_id = external_payment_id
        if gateway_response is not None:
            payment.gateway_response = gateway_response
        await self.payment_repo.save(payment)

        if payment.invoice_id is not None:
            allocated = await self._allocate(tenant_id, payment, [(payment.invoice_id, payment.amount)])
            if not allocated.ok:
                return Result.failure(allocated.error)
            payment = await self.payment_repo.get(tenant_id, payment_id)

        await self.events.append(
            tenant_id,
            BillingEventType.PAYMENT_SUCCEEDED,
            {
                "paymentId": payment.id,
                "paymentNumber": payment.payment_number,
                "amount": payment.amount,
                "invoiceId": payment.invoice_id,
            },
        )
        PAYMENTS_TOTAL.labels(status=PaymentStatus.SUCCEEDED.value).inc()
        logger.info(
            "Payment succeeded",
            extra={"tenant_id": str(tenant_id), "payment_number": payment.payment_number},
        )
        return Result.success(payment)

    @transactional
    async def mark_failed(
        self, tenant_id: uuid.UUID, payment_id: uuid.UUID, reason: str
    ) -> Result[Payment]:
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        if payment.status not in IN_FLIGHT_STATUSES:
            return Result.failure(self._bad_transition(payment, PaymentStatus.FAILED))

        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = reason
        payment.processed_at = utcnow()
        await self.payment_repo.save(payment)
        await self.events.append(
            tenant_id,
            BillingEventType.PAYMENT_FAILED,
            {"paymentId": payment.id, "reason": reason},
        )
        PAYMENTS_TOTAL.labels(status=PaymentStatus.FAILED.value).inc()
        logger.warning(
            "Payment failed",
            extra={"tenant_id": str(tenant_id), "payment_number": payment.payment_number},
        )
        return Result.success(payment)

    @transactional
    async def cancel_payment(self, tenant_id: uuid.UUID, payment_id: uuid.UUID) -> Result[Payment]:
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        if payment.status not in IN_FLIGHT_STATUSES:
            return Result.failure(self._bad_transition(payment, PaymentStatus.CANCELED))
        payment.status = PaymentStatus.CANCELED.value
        await self.payment_repo.save(payment)
        PAYMENTS_TOTAL.labels(status=PaymentStatus.CANCELED.value).inc()
        return Result.success(payment)

    # ==================== Refunds ====================

    @transactional
    async def refund(
        self,
        tenant_id: uuid.UUID,
        payment_id: uuid.UUID,
        amount: Decimal,
        reason: Optional[str] = None,
    ) -> Result[Payment]:
        """Refund part or all of a settled payment.

        Invoice balances are left alone; reverse an allocation to reopen one.
        """
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))

        amount_minor = to_minor(amount, payment.currency)
        if amount_minor <= 0:
            return Result.failure(ValidationError("Refund amount must be positive"))
        rejected = self._refund_rejection(payment, amount_minor)
        if rejected is not None:
            return Result.failure(rejected)

        refunded = await self.payment_repo.increment_refund(
            tenant_id, payment_id, amount_minor, reason, utcnow()
        )
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if refunded is None:
            return Result.failure(
                self._refund_rejection(payment, amount_minor)
                or RefundExceedsPayment("Refund amount exceeds payment amount")
            )

        await self.events.append(
            tenant_id,
            BillingEventType.PAYMENT_REFUNDED,
            {
                "paymentId": payment.id,
                "amount": amount_minor,
                "refundAmount": payment.refund_amount,
                "status": payment.status,
                "reason": reason,
            },
        )
        PAYMENTS_TOTAL.labels(status=payment.status).inc()
        return Result.success(payment)

    # ==================== Allocation ====================

    @transactional
    async def allocate(
        self,
        tenant_id: uuid.UUID,
        payment_id: uuid.UUID,
        allocations: Sequence[tuple[uuid.UUID, Decimal]],
    ) -> Result[list[PaymentAllocation]]:
        """Split a settled payment across invoices. Amounts are major units."""
        payment = await self.payment_repo.get(tenant_id, payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        pairs = [
            (invoice_id, to_minor(amount, payment.currency))
            for invoice_id, amount in allocations
        ]
        return await self._allocate(tenant_id, payment, pairs)

    @transactional
    async def reverse_allocation(
        self,
        tenant_id: uuid.UUID,
        allocation_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Result[PaymentAllocation]:
        """Append a reversal row and return the money to the payment."""
        allocation = await self.allocation_repo.get(tenant_id, allocation_id)
        if allocation is None:
            return Result.failure(NotFoundError("Allocation not found"))
        if allocation.kind != AllocationKind.ALLOCATION.value:
            return Result.failure(ValidationError("Reversal entries cannot be reversed"))
        if await self.allocation_repo.get_reversal_of(tenant_id, allocation_id) is not None:
            return Result.failure(ConflictError("Allocation already reversed"))

        reversal = await self.allocation_repo.create_reversal(
            tenant_id=tenant_id,
            payment_id=allocation.payment_id,
            invoice_id=allocation.invoice_id,
            amount=allocation.amount,
            reverses_id=allocation.id,
            reason=reason,
        )
        if reversal is None:
            return Result.failure(ConflictError("Allocation already reversed"))

        released = await self.payment_repo.decrement_allocated(
            tenant_id, allocation.payment_id, allocation.amount
        )
        if not released:
            return Result.failure(
                ValidationError("Payment allocation is inconsistent with its ledger")
            )
        reversed_ = await self.invoices.reverse_payment(
            tenant_id, allocation.invoice_id, allocation.amount
        )
        if not reversed_.ok:
            return Result.failure(reversed_.error)

        await self.events.append(
            tenant_id,
            BillingEventType.PAYMENT_ALLOCATION_REVERSED,
            {
                "allocationId": allocation.id,
                "reversalId": reversal.id,
                "paymentId": allocation.payment_id,
                "invoiceId": allocation.invoice_id,
                "amount": allocation.amount,
                "reason": reason,
            },
        )
        return Result.success(reversal)

    # ==================== Helpers ====================

    async def _allocate(
        self,
        tenant_id: uuid.UUID,
        payment: Payment,
        pairs: Sequence[tuple[uuid.UUID, int]],
    ) -> Result[list[PaymentAllocation]]:
        if any(amount < 0 for _, amount in pairs):
            return Result.failure(ValidationError("Allocation amounts cannot be negative"))
        if payment.status != PaymentStatus.SUCCEEDED.value:
            return Result.failure(
                InvalidStateTransition(
                    "Only succeeded payments can be allocated", {"status": payment.status}
                )
            )

        total = sum(amount for _, amount in pairs)
        if total == 0:
            return Result.success([])
        if not await self.payment_repo.increment_allocated(tenant_id, payment.id, total):
            return Result.failure(
                ValidationError(
                    "Allocation exceeds payment amount",
                    {"unallocated": payment.unallocated_amount, "requested": total},
                )
            )

        rows = []
        for invoice_id, amount in pairs:
            if amount == 0:
                continue
            invoice = await self.invoices.get_invoice(tenant_id, invoice_id)
            if invoice is not None and invoice.currency != payment.currency:
                return Result.failure(
                    ValidationError(
                        "Payment currency does not match invoice",
                        {"invoice_id": str(invoice_id)},
                    )
                )
            applied = await self.invoices.apply_payment(tenant_id, invoice_id, amount)
            if not applied.ok:
                return Result.failure(applied.error)
            rows.append(
                await self.allocation_repo.create(
                    tenant_id=tenant_id,
                    payment_id=payment.id,
                    invoice_id=invoice_id,
                    kind=AllocationKind.ALLOCATION.value,
                    amount=amount,
                )
            )

        await self.events.append(
            tenant_id,
            BillingEventType.PAYMENT_ALLOCATED,
            {
                "paymentId": payment.id,
                "allocations": [
                    {"invoiceId": row.invoice_id, "amount": row.amount} for row in rows
                ],
            },
        )
        return Result.success(rows)

    def _refund_rejection(self, payment: Payment, amount: int) -> Optional[ServiceError]:
        """Why a refund of ``amount`` minor units cannot apply, if it cannot.

        A fully refunded payment has nothing left, so it reports the
        exceeded balance rather than a bad transition.
        """
        settled = REFUNDABLE_PAYMENT_STATUSES + (PaymentStatus.REFUNDED.value,)
        if payment.status not in settled:
            return InvalidStateTransition(
                "Only succeeded payments can be refunded", {"status": payment.status}
            )
        refundable = payment.amount - payment.refund_amount
        if amount > refundable:
            return RefundExceedsPayment(
                "Refund amount exceeds payment amount",
                {"refundable": refundable, "requested": amount},
            )
        return None

    def _bad_transition(self, payment: Payment, target: PaymentStatus) -> InvalidStateTransition:
        return InvalidStateTransition(
            f"Cannot change payment from {payment.status} to {target.value}",
            {"from": payment.status, "to": target.value},
        )
