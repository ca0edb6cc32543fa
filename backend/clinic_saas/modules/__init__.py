"""Application modules.

This package contains the feature modules for the clinic SaaS platform:
- tenant: Tenant resolution, request context and per-tenant rate limiting
- billing: Plan catalog, subscription lifecycle, invoices, payments,
  usage metering and billing events
"""
