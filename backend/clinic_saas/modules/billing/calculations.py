"""Pure invoice arithmetic and status derivation.

Nothing here touches the database, so every rule can be exercised in
isolation. Amounts are integer minor units throughout.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from clinic_saas.modules.billing.models import InvoiceStatus
from clinic_saas.modules.billing.money import round_half_up

# Statuses never changed by derivation
TERMINAL_INVOICE_STATUSES = frozenset({
    InvoiceStatus.VOID,
    InvoiceStatus.WRITTEN_OFF,
    InvoiceStatus.UNCOLLECTIBLE,
})


@dataclass(frozen=True)
class LineAmounts:
    """Computed amounts for one line item."""
    total: int
    tax: int


@dataclass(frozen=True)
class InvoiceTotals:
    """Computed invoice totals."""
    subtotal: int
    tax_amount: int
    discount_amount: int
    total_amount: int


def compute_line(
    unit_price: int,
    quantity: Decimal,
    discount: int = 0,
    tax_rate: Decimal = Decimal("0"),
) -> LineAmounts:
    """Line total and tax, each rounded to minor units.

    ``total = round(unit_price * quantity) - discount`` and
    ``tax = round(total * tax_rate)``.
    """
    gross = round_half_up(Decimal(unit_price) * Decimal(quantity))
    total = gross - discount
    tax = round_half_up(Decimal(total) * Decimal(tax_rate))
    return LineAmounts(total=total, tax=tax)


def price_line_item(item: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of a stored line item with ``total`` and ``tax`` filled in."""
    amounts = compute_line(
        unit_price=int(item["unit_price"]),
        quantity=Decimal(str(item.get("quantity", 1))),
        discount=int(item.get("discount", 0)),
        tax_rate=Decimal(str(item.get("tax_rate", 0))),
    )
    priced = dict(item)
    priced["total"] = amounts.total
    priced["tax"] = amounts.tax
    return priced


def compute_invoice_totals(
    line_items: Sequence[Mapping[str, Any]],
    discount_amount: int = 0,
) -> InvoiceTotals:
    """Sum already-rounded line totals into invoice totals."""
    subtotal = sum(int(item["total"]) for item in line_items)
    tax_amount = sum(int(item["tax"]) for item in line_items)
    return InvoiceTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=subtotal + tax_amount - discount_amount,
    )


def derive_invoice_status(
    total: int,
    paid: int,
    due_date: Optional[date],
    current_status: InvoiceStatus | str,
    today: date,
) -> InvoiceStatus:
    """Derive an invoice's status from its amounts and due date.

    Deterministic and idempotent: feeding the result back in as
    ``current_status`` with the same inputs returns it unchanged.
    """
    current = InvoiceStatus(current_status)
    if current in TERMINAL_INVOICE_STATUSES:
        return current

    balance = total - paid
    if paid > 0 and balance <= 0:
        return InvoiceStatus.PAID
    if 0 < paid < total:
        return InvoiceStatus.PARTIALLY_PAID

    past_due = due_date is not None and today > due_date
    if balance > 0 and past_due:
        return InvoiceStatus.OVERDUE
    if current in (InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.OVERDUE):
        # Payments were reversed, or the due date moved out
        return InvoiceStatus.OPEN
    return current
