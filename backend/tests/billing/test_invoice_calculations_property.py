"""Property-based tests for invoice arithmetic and status derivation.

Covers line rounding, totals, the paid/balance relationship and the
idempotence of derive_invoice_status.
"""

from datetime import date, timedelta
from decimal import Decimal

from hypothesis import assume, given, settings, strategies as st

from clinic_saas.modules.billing.calculations import (
    TERMINAL_INVOICE_STATUSES,
    compute_invoice_totals,
    compute_line,
    derive_invoice_status,
    price_line_item,
)
from clinic_saas.modules.billing.models import InvoiceStatus
from clinic_saas.modules.billing.money import from_minor, round_half_up, to_minor


# Strategies for generating test data
unit_price_strategy = st.integers(min_value=0, max_value=1_000_000)
quantity_strategy = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("100"), places=2, allow_nan=False
)
tax_rate_strategy = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("1"), places=3, allow_nan=False
)
status_strategy = st.sampled_from(list(InvoiceStatus))
today_strategy = st.dates(min_value=date(2020, 1, 1), max_value=date(2030, 12, 31))


@st.composite
def line_item_strategy(draw):
    unit_price = draw(unit_price_strategy)
    quantity = draw(quantity_strategy)
    gross = round_half_up(Decimal(unit_price) * quantity)
    discount = draw(st.integers(min_value=0, max_value=gross))
    return price_line_item({
        "type": "procedure",
        "description": "Procedure",
        "quantity": str(quantity),
        "unit_price": unit_price,
        "discount": discount,
        "tax_rate": str(draw(tax_rate_strategy)),
    })


class TestLineAndInvoiceTotals:
    """Totals are sums of individually rounded lines."""

    @given(
        unit_price=unit_price_strategy,
        quantity=quantity_strategy,
        tax_rate=tax_rate_strategy,
    )
    @settings(max_examples=100)
    def test_line_total_is_rounded_before_tax(
        self, unit_price: int, quantity: Decimal, tax_rate: Decimal
    ) -> None:
        amounts = compute_line(unit_price, quantity, 0, tax_rate)

        assert amounts.total == round_half_up(Decimal(unit_price) * quantity), (
            f"Line total {amounts.total} is not round({unit_price} * {quantity})"
        )
        assert amounts.tax == round_half_up(Decimal(amounts.total) * tax_rate), (
            f"Tax {amounts.tax} must be computed from the rounded line total"
        )

    @given(
        items=st.lists(line_item_strategy(), min_size=1, max_size=10),
        discount=st.integers(min_value=0, max_value=10_000),
    )
    @settings(max_examples=100)
    def test_invoice_totals_invariants(self, items: list, discount: int) -> None:
        totals = compute_invoice_totals(items, discount)

        assert totals.subtotal == sum(item["total"] for item in items), (
            "subtotal must equal the sum of line totals"
        )
        assert totals.tax_amount == sum(item["tax"] for item in items), (
            "tax must equal the sum of line taxes"
        )
        assert totals.total_amount == totals.subtotal + totals.tax_amount - discount, (
            f"total {totals.total_amount} != subtotal + tax - discount"
        )

    def test_discount_reduces_line_before_tax(self) -> None:
        amounts = compute_line(5000, Decimal("2"), discount=1000, tax_rate=Decimal("0.10"))

        assert amounts.total == 9000
        assert amounts.tax == 900

    def test_half_cent_rounds_up(self) -> None:
        # 0.5 x 1.01 = 0.505 -> 0.51
        amounts = compute_line(101, Decimal("0.5"), 0, Decimal("0"))
        assert amounts.total == 51
        assert round_half_up(Decimal("100.5")) == 101
        assert to_minor(Decimal("1.005"), "USD") == 101


class TestMoneyConversion:
    """Minor unit conversion respects currency precision."""

    @given(value=st.integers(min_value=0, max_value=10**12))
    @settings(max_examples=100)
    def test_minor_units_survive_conversion(self, value: int) -> None:
        for currency in ("USD", "JPY", "KWD"):
            assert to_minor(from_minor(value, currency), currency) == value, (
                f"{value} minor units of {currency} changed after conversion"
            )

    def test_zero_decimal_currency(self) -> None:
        assert to_minor(Decimal("1500"), "JPY") == 1500
        assert from_minor(1500, "JPY") == Decimal("1500")

    def test_three_decimal_currency(self) -> None:
        assert to_minor(Decimal("1.234"), "KWD") == 1234
        assert str(from_minor(1234, "KWD")) == "1.234"


class TestDeriveInvoiceStatus:
    """Status derivation is deterministic and idempotent."""

    @given(
        total=st.integers(min_value=0, max_value=1_000_000),
        paid_ratio=st.floats(min_value=0, max_value=1),
        due_offset=st.integers(min_value=-60, max_value=60),
        current=status_strategy,
        today=today_strategy,
    )
    @settings(max_examples=200)
    def test_derivation_is_a_fixed_point(
        self,
        total: int,
        paid_ratio: float,
        due_offset: int,
        current: InvoiceStatus,
        today: date,
    ) -> None:
        paid = int(total * paid_ratio)
        due_date = today + timedelta(days=due_offset)

        first = derive_invoice_status(total, paid, due_date, current, today)
        second = derive_invoice_status(total, paid, due_date, first, today)

        assert first == second, (
            f"Re-deriving {first} gave {second} "
            f"(total={total}, paid={paid}, due={due_date}, today={today})"
        )

    @given(
        total=st.integers(min_value=1, max_value=1_000_000),
        current=status_strategy,
        today=today_strategy,
    )
    @settings(max_examples=100)
    def test_fully_paid_is_paid(self, total: int, current: InvoiceStatus, today: date) -> None:
        assume(current not in TERMINAL_INVOICE_STATUSES)

        status = derive_invoice_status(total, total, today, current, today)

        assert status == InvoiceStatus.PAID, (
            f"paid == total must derive paid, got {status} from {current}"
        )

    @given(
        total=st.integers(min_value=2, max_value=1_000_000),
        current=status_strategy,
        today=today_strategy,
        due_offset=st.integers(min_value=-30, max_value=30),
    )
    @settings(max_examples=100)
    def test_partial_payment_is_partially_paid(
        self, total: int, current: InvoiceStatus, today: date, due_offset: int
    ) -> None:
        assume(current not in TERMINAL_INVOICE_STATUSES)

        status = derive_invoice_status(
            total, total // 2 or 1, today + timedelta(days=due_offset), current, today
        )

        assert status == InvoiceStatus.PARTIALLY_PAID

    @given(current=st.sampled_from(sorted(TERMINAL_INVOICE_STATUSES)), today=today_strategy)
    @settings(max_examples=50)
    def test_terminal_statuses_never_change(self, current: InvoiceStatus, today: date) -> None:
        assert derive_invoice_status(10_000, 10_000, today, current, today) == current
        assert derive_invoice_status(10_000, 0, today - timedelta(days=90), current, today) == current

    def test_unpaid_draft_past_due_becomes_overdue(self) -> None:
        today = date(2026, 3, 1)
        status = derive_invoice_status(
            11_000, 0, today - timedelta(days=5), InvoiceStatus.DRAFT, today
        )
        assert status == InvoiceStatus.OVERDUE

    def test_unpaid_draft_before_due_stays_draft(self) -> None:
        today = date(2026, 3, 1)
        status = derive_invoice_status(
            11_000, 0, today + timedelta(days=5), InvoiceStatus.DRAFT, today
        )
        assert status == InvoiceStatus.DRAFT

    def test_open_past_due_becomes_overdue(self) -> None:
        today = date(2026, 3, 1)
        status = derive_invoice_status(
            11_000, 0, today - timedelta(days=1), InvoiceStatus.OPEN, today
        )
        assert status == InvoiceStatus.OVERDUE

    def test_due_today_is_not_overdue(self) -> None:
        today = date(2026, 3, 1)
        assert derive_invoice_status(11_000, 0, today, InvoiceStatus.OPEN, today) == InvoiceStatus.OPEN

    def test_reversed_payment_reopens(self) -> None:
        today = date(2026, 3, 1)
        status = derive_invoice_status(
            11_000, 0, today + timedelta(days=10), InvoiceStatus.PAID, today
        )
        assert status == InvoiceStatus.OPEN
