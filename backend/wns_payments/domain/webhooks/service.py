from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.webhooks.db_models import ProcessedStripeEvent
from wns_payments.infra.db import dialect_insert

logger = logging.getLogger(__name__)


async def claim_event(session: AsyncSession, event_id: str, event_type: str) -> bool:
    """Insert the event id if absent. Returns False when it was already processed.

    The claim shares the caller's transaction, so a handler failure releases it
    and the provider's retry is processed again. Concurrent deliveries of one id
    are settled by the primary key.
    """
    insert = dialect_insert(session)
    stmt = (
        insert(ProcessedStripeEvent)
        .values(event_id=event_id, event_type=event_type)
        .on_conflict_do_nothing(index_elements=[ProcessedStripeEvent.event_id])
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1
