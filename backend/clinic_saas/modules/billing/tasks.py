"""Billing background tasks.

Scheduled sweeps for subscription lifecycle and invoice status. Each sweep
walks active tenants one at a time; every tenant's change commits on its
own, so one tenant's failure does not hold back the rest.
"""

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable

from clinic_saas.core.celery_app import celery_app
from clinic_saas.core.database import async_session_maker
from clinic_saas.core.errors import Result, ServiceError
from clinic_saas.core.logging import log_error, log_info, log_warning, tenant_log_scope
from clinic_saas.core.metrics import BILLING_SWEEP_DURATION_SECONDS
from clinic_saas.core.timeutils import utcnow
from clinic_saas.modules.billing.service import BillingService
from clinic_saas.modules.tenant.repository import TenantRepository

logger = logging.getLogger(__name__)

TenantStep = Callable[[BillingService, uuid.UUID], Awaitable[Result]]


async def run_sweep(name: str, step: TenantStep) -> int:
    """Apply ``step`` to every active tenant. Returns how many changed."""
    started = time.perf_counter()
    changed = 0
    async with async_session_maker() as session:
        tenant_ids = await TenantRepository(session).list_active_ids()
        service = BillingService(session)
        for tenant_id in tenant_ids:
            with tenant_log_scope(tenant_id):
                try:
                    result = await step(service, tenant_id)
                except ServiceError as e:
                    log_error(logger, f"Billing sweep {name} failed for tenant", exception=e)
                    continue
                if not result.ok:
                    log_warning(
                        logger,
                        f"Billing sweep {name} rejected change",
                        error=result.error.kind,
                        detail=result.error.message,
                    )
                    continue
            if isinstance(result.value, int):
                changed += result.value
            elif result.value is not None:
                changed += 1

    BILLING_SWEEP_DURATION_SECONDS.labels(sweep=name).observe(time.perf_counter() - started)
    log_info(logger, f"Billing sweep {name} finished", changed=changed)
    return changed


async def _expire_trials() -> int:
    now = utcnow()
    return await run_sweep(
        "expire_trials",
        lambda service, tenant_id: service.subscriptions.expire_trial(tenant_id, now),
    )


async def _enforce_grace_windows() -> int:
    now = utcnow()
    return await run_sweep(
        "enforce_grace_windows",
        lambda service, tenant_id: service.subscriptions.enforce_grace_window(tenant_id, now),
    )


async def _refresh_overdue_invoices() -> int:
    today = utcnow().date()
    return await run_sweep(
        "refresh_overdue_invoices",
        lambda service, tenant_id: service.invoices.refresh_overdue(tenant_id, today),
    )


async def _renew_subscriptions() -> int:
    now = utcnow()
    return await run_sweep(
        "renew_subscriptions",
        lambda service, tenant_id: service.subscriptions.renew(tenant_id, now),
    )


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.expire_trials",
)
def expire_trials_task(self):
    """Move finished trials to active or past due."""
    return asyncio.run(_expire_trials())


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.enforce_grace_windows",
)
def enforce_grace_windows_task(self):
    """Suspend subscriptions past due beyond the grace window."""
    return asyncio.run(_enforce_grace_windows())


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.refresh_overdue_invoices",
)
def refresh_overdue_invoices_task(self):
    """Mark unpaid invoices past their due date as overdue."""
    return asyncio.run(_refresh_overdue_invoices())


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.renew_subscriptions",
)
def renew_subscriptions_task(self):
    """Advance auto-renewing subscriptions whose period has ended."""
    return asyncio.run(_renew_subscriptions())


# These schedules are merged with the main celery_app.conf.beat_schedule
BILLING_BEAT_SCHEDULE = {
    "billing-expire-trials": {
        "task": "billing.expire_trials",
        "schedule": 3600.0,  # Every hour
    },
    "billing-enforce-grace-windows": {
        "task": "billing.enforce_grace_windows",
        "schedule": 3600.0,  # Every hour
    },
    "billing-refresh-overdue-invoices": {
        "task": "billing.refresh_overdue_invoices",
        "schedule": 86400.0,  # Every 24 hours
    },
    "billing-renew-subscriptions": {
        "task": "billing.renew_subscriptions",
        "schedule": 3600.0,  # Every hour
    },
}

celery_app.conf.beat_schedule.update(BILLING_BEAT_SCHEDULE)
