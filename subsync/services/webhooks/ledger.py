from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.db import models
from subsync.services.webhooks.events import WebhookEvent


async def already_processed(session: AsyncSession, event_id: str | None) -> bool:
    if not event_id:
        return False
    q = select(models.ProcessedWebhookEvent.event_id).where(models.ProcessedWebhookEvent.event_id == event_id)
    res = await session.execute(q)
    return res.scalar_one_or_none() is not None


async def record_processed(session: AsyncSession, event: WebhookEvent, outcome: str) -> None:
    """Remember a handled event id in the caller's transaction."""
    if not event.event_id:
        return
    bind = session.get_bind()
    dialect = getattr(getattr(bind, "dialect", None), "name", "")
    insert = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = (
        insert(models.ProcessedWebhookEvent)
        .values(event_id=event.event_id, event_type=event.event_type, outcome=outcome, processed_at=models.utcnow())
        .on_conflict_do_nothing(index_elements=[models.ProcessedWebhookEvent.event_id])
    )
    await session.execute(stmt)
