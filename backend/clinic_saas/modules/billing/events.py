"""Append-only billing event log.

Events are written inside the caller's transaction through a savepoint, so a
failed insert is logged and counted without undoing the mutation it
describes.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_saas.core.database import transactional
from clinic_saas.core.errors import NotFoundError, Result
from clinic_saas.core.metrics import BILLING_EVENTS_TOTAL
from clinic_saas.core.timeutils import utcnow
from clinic_saas.modules.billing.models import BillingEvent, BillingEventType
from clinic_saas.modules.billing.repository import BillingEventRepository

logger = logging.getLogger(__name__)


class BillingEventLog:
    """Records billing lifecycle facts for audit and reconciliation."""

    def __init__(
        self,
        session: AsyncSession,
        repo: Optional[BillingEventRepository] = None,
    ):
        self.session = session
        self.repo = repo or BillingEventRepository(session)

    async def append(
        self,
        tenant_id: uuid.UUID,
        event_type: BillingEventType | str,
        payload: dict[str, Any],
    ) -> Optional[BillingEvent]:
        """Append an event. Returns None if the insert failed."""
        event_type = BillingEventType(event_type).value
        try:
            async with self.session.begin_nested():
                event = await self.repo.create(
                    tenant_id=tenant_id,
                    event_type=event_type,
                    event_data=jsonable_encoder(payload),
                )
        except SQLAlchemyError:
            BILLING_EVENTS_TOTAL.labels(event_type=event_type, status="failed").inc()
            logger.error(
                "Failed to record billing event",
                extra={"tenant_id": str(tenant_id), "event_type": event_type},
                exc_info=True,
            )
            return None

        BILLING_EVENTS_TOTAL.labels(event_type=event_type, status="recorded").inc()
        return event

    @transactional
    async def mark_processed(
        self, tenant_id: uuid.UUID, event_id: uuid.UUID
    ) -> Result[BillingEvent]:
        """Flag an event as processed. Repeat calls keep the first timestamp."""
        event = await self.repo.get(tenant_id, event_id)
        if event is None:
            return Result.failure(NotFoundError("Billing event not found"))
        if not event.processed:
            event.processed = True
            event.processed_at = utcnow()
            await self.session.flush()
        return Result.success(event)

    async def list_events(
        self,
        tenant_id: uuid.UUID,
        event_type: Optional[str] = None,
        processed: Optional[bool] = None,
        limit: int = 100,
    ) -> list[BillingEvent]:
        return await self.repo.list_for_tenant(
            tenant_id, event_type=event_type, processed=processed, limit=limit
        )

    async def count_unprocessed(self, tenant_id: uuid.UUID) -> int:
        return await self.repo.count_unprocessed(tenant_id)
