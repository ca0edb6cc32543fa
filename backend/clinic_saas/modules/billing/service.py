"""Billing service facade.

Wires the ledgers to one session so nested ledger calls share a single
unit of work, and builds the per-tenant read models used by the API.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.config import settings
from clinic_saas.core.timeutils import utcnow
from clinic_saas.modules.billing.catalog import PlanCatalog
from clinic_saas.modules.billing.events import BillingEventLog
from clinic_saas.modules.billing.invoices import InvoiceLedger
from clinic_saas.modules.billing.metering import UsageMeter
from clinic_saas.modules.billing.money import from_minor
from clinic_saas.modules.billing.payments import PaymentLedger
from clinic_saas.modules.billing.schemas import BillingOverviewResponse, FeatureCheckResponse
from clinic_saas.modules.billing.subscriptions import SubscriptionLedger


class BillingService:
    """Entry point to the billing ledgers for one request or job."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.events = BillingEventLog(session)
        self.catalog = PlanCatalog(session)
        self.subscriptions = SubscriptionLedger(session, catalog=self.catalog, events=self.events)
        self.invoices = InvoiceLedger(session, events=self.events)
        self.payments = PaymentLedger(session, invoices=self.invoices, events=self.events)
        self.usage = UsageMeter(session, catalog=self.catalog, events=self.events)

    async def check_feature(self, tenant_id: uuid.UUID, feature: str) -> FeatureCheckResponse:
        """Whether the tenant's current plan includes ``feature``."""
        current = await self.subscriptions.get_current(tenant_id)
        if current is None:
            return FeatureCheckResponse(feature=feature, has_access=False, plan=None)
        _, plan = current
        return FeatureCheckResponse(
            feature=feature,
            has_access=plan.has_feature(feature),
            plan=plan.slug,
        )

    async def overview(
        self, tenant_id: uuid.UUID, now: Optional[datetime] = None
    ) -> BillingOverviewResponse:
        """Subscription, receivables, event backlog and usage for one tenant."""
        now = now or utcnow()
        summary = await self.subscriptions.status_summary(tenant_id, now)
        currency = summary.currency if summary is not None else settings.DEFAULT_CURRENCY
        outstanding = await self.invoices.outstanding_balance(tenant_id)
        return BillingOverviewResponse(
            subscription=summary,
            currency=currency,
            outstanding_balance=from_minor(outstanding, currency),
            invoice_counts=await self.invoices.count_by_status(tenant_id),
            unprocessed_events=await self.events.count_unprocessed(tenant_id),
            usage=await self.usage.usage_overview(tenant_id, now),
        )
