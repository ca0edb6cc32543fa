"""Billing module.

Plan catalog, subscription lifecycle, invoices, payments, usage metering
and the billing event log.
"""

from clinic_saas.modules.billing.catalog import PlanCatalog
from clinic_saas.modules.billing.events import BillingEventLog
from clinic_saas.modules.billing.invoices import InvoiceLedger
from clinic_saas.modules.billing.metering import UsageMeter
from clinic_saas.modules.billing.payments import PaymentLedger
from clinic_saas.modules.billing.router import router
from clinic_saas.modules.billing.service import BillingService
from clinic_saas.modules.billing.subscriptions import SubscriptionLedger

__all__ = [
    "router",
    "BillingService",
    "BillingEventLog",
    "InvoiceLedger",
    "PaymentLedger",
    "PlanCatalog",
    "SubscriptionLedger",
    "UsageMeter",
]
