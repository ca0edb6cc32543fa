"""Concurrent payments against a real database.

Every writer gets its own session and connection, so the guarded UPDATE in
the invoice repository is what keeps the invoice from being overpaid.
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clinic_saas.core.database import Base
from clinic_saas.core.errors import PaymentExceedsBalance
from clinic_saas.modules.billing.models import InvoiceStatus, PaymentStatus
from clinic_saas.modules.billing.schemas import LineItemCreate
from clinic_saas.modules.billing.service import BillingService
from clinic_saas.modules.tenant.repository import TenantRepository


@pytest_asyncio.fixture
async def file_sessions(tmp_path) -> async_sessionmaker:
    """Session maker over a file database with one connection per session."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    # Writers queue on the database lock instead of failing on upgrade
    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def _open_invoice(sessions, total: str):
    async with sessions() as session:
        tenant = await TenantRepository(session).create(slug="acme", name="Acme Clinic")
        await session.commit()
        tenant_id = tenant.id
        lines = [
            LineItemCreate(
                type="procedure",
                description="Dental cleaning",
                quantity=Decimal("1"),
                unit_price=Decimal(total),
            )
        ]
        ledger = BillingService(session).invoices
        invoice = (await ledger.create_invoice(tenant_id, lines)).unwrap()
        (await ledger.send_invoice(tenant_id, invoice.id)).unwrap()
        return tenant_id, invoice.id


async def _apply(sessions, tenant_id, invoice_id, amount: int):
    async with sessions() as session:
        return await BillingService(session).invoices.apply_payment(tenant_id, invoice_id, amount)


async def _stored_invoice(sessions, tenant_id, invoice_id):
    async with sessions() as session:
        return await BillingService(session).invoices.get_invoice(tenant_id, invoice_id)


class TestConcurrentInvoicePayments:
    """N payments of a against a total of N*a settle the invoice exactly."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [2, 5, 10])
    async def test_exact_payments_settle_invoice(self, file_sessions, count):
        tenant_id, invoice_id = await _open_invoice(file_sessions, f"{count * 25}.00")

        results = await asyncio.gather(*(
            _apply(file_sessions, tenant_id, invoice_id, 2_500) for _ in range(count)
        ))

        assert all(result.ok for result in results)
        stored = await _stored_invoice(file_sessions, tenant_id, invoice_id)
        assert stored.paid_amount == count * 2_500
        assert stored.balance_amount == 0
        assert stored.status == InvoiceStatus.PAID.value

    @pytest.mark.asyncio
    async def test_one_extra_payment_is_rejected(self, file_sessions):
        tenant_id, invoice_id = await _open_invoice(file_sessions, "100.00")

        results = await asyncio.gather(*(
            _apply(file_sessions, tenant_id, invoice_id, 2_500) for _ in range(5)
        ))

        assert sum(result.ok for result in results) == 4
        rejected = [result.error for result in results if not result.ok]
        assert len(rejected) == 1
        assert isinstance(rejected[0], PaymentExceedsBalance)
        stored = await _stored_invoice(file_sessions, tenant_id, invoice_id)
        assert stored.paid_amount == 10_000
        assert stored.status == InvoiceStatus.PAID.value

    @pytest.mark.asyncio
    async def test_settling_linked_payments_concurrently(self, file_sessions):
        tenant_id, invoice_id = await _open_invoice(file_sessions, "90.00")
        async with file_sessions() as session:
            payments = BillingService(session).payments
            payment_ids = [
                (
                    await payments.record_payment(
                        tenant_id, Decimal("30.00"), "card", invoice_id=invoice_id
                    )
                ).unwrap().id
                for _ in range(3)
            ]

        async def settle(payment_id):
            async with file_sessions() as session:
                return await BillingService(session).payments.mark_succeeded(tenant_id, payment_id)

        results = await asyncio.gather(*(settle(payment_id) for payment_id in payment_ids))

        assert all(result.ok for result in results)
        assert {result.value.status for result in results} == {PaymentStatus.SUCCEEDED.value}
        stored = await _stored_invoice(file_sessions, tenant_id, invoice_id)
        assert stored.paid_amount == 9_000
        assert stored.status == InvoiceStatus.PAID.value
