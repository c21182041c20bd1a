from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.db import models

logger = logging.getLogger(__name__)


async def _profile_owner(session: AsyncSession, customer_id: str) -> str | None:
    q = select(models.UserProfile.id).where(models.UserProfile.provider_customer_id == customer_id)
    return (await session.execute(q)).scalars().first()


async def resolve_user_id(session: AsyncSession, customer_id: str | None) -> str | None:
    """Internal user id linked to a provider customer, or None. A miss is not an error.

    The profile link is checked first. A user who checked out again under a
    new customer keeps their original link, so the customer recorded on the
    subscription row is the fallback.
    """
    if not customer_id:
        return None
    user_id = await _profile_owner(session, customer_id)
    if user_id is not None:
        return user_id
    q = select(models.Subscription.user_id).where(models.Subscription.provider_customer_id == customer_id)
    return (await session.execute(q)).scalars().first()


async def link_customer(session: AsyncSession, user_id: str, customer_id: str) -> bool:
    """Record the customer id on the profile if it has none yet.

    Returns True when the profile ends up linked to ``customer_id``. An
    existing link to a different customer is never overwritten.
    """
    owner = await _profile_owner(session, customer_id)
    if owner is not None:
        if owner != user_id:
            logger.warning("Customer %s already belongs to user %s, not %s", customer_id, owner, user_id)
        return owner == user_id

    stmt = (
        update(models.UserProfile)
        .where(models.UserProfile.id == user_id, models.UserProfile.provider_customer_id.is_(None))
        .values(provider_customer_id=customer_id)
    )
    res = await session.execute(stmt)
    if res.rowcount:
        logger.info("Linked customer %s to user %s", customer_id, user_id)
        return True

    profile = await session.get(models.UserProfile, user_id)
    if profile is None:
        return False
    if profile.provider_customer_id == customer_id:
        return True
    logger.warning(
        "User %s is already linked to customer %s; not relinking to %s",
        user_id,
        profile.provider_customer_id,
        customer_id,
    )
    return False
