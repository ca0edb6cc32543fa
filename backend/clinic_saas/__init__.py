"""Clinic SaaS Billing Backend Application.

Multi-tenant backend for clinic operations, layered on a subscription and
billing core.

Modules:
    - core: Configuration, database, Redis, Celery, logging and observability
    - modules.tenant: Tenant resolution, isolation and rate limiting
    - modules.billing: Plans, subscriptions, invoices, payments, usage metering
      and the billing event log
"""

__version__ = "0.1.0"
