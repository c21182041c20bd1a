"""Subscription state reconciliation.

Every write is a single statement keyed on ``user_id`` so that redelivered
or concurrently delivered events converge on the same row:

* snapshot events (checkout completion, subscription created/updated) use
  ``INSERT .. ON CONFLICT (user_id) DO UPDATE``;
* status-only events (subscription deleted, invoice paid/failed) use a
  conditional ``UPDATE``.

Events carry the provider's ``created`` timestamp. Status and the snapshot
fields (plan, period end, trial end) each remember the timestamp of the
event that last set them, and a strictly older event never overwrites a
newer value. A ``canceled`` subscription stays canceled; only a snapshot
for a different subscription id (a resubscribe) replaces the row.
"""
from __future__ import annotations

import logging
import uuid
from enum import Enum

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.core.errors import UnknownPriceError
from subsync.db import models
from subsync.services.payments.service import PaymentGateway
from subsync.services.subscriptions.plans import Plan, PlanClassifier
from subsync.services.subscriptions.resolver import link_customer, resolve_user_id
from subsync.services.webhooks.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    SubscriptionSnapshot,
)

logger = logging.getLogger(__name__)


class Status(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Outcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"
    STALE = "stale"
    DUPLICATE = "duplicate"


PROVIDER_STATUS: dict[str, Status] = {
    "trialing": Status.TRIALING,
    "active": Status.ACTIVE,
    "past_due": Status.PAST_DUE,
    "unpaid": Status.PAST_DUE,
    "incomplete": Status.PAST_DUE,
    "paused": Status.PAST_DUE,
    "canceled": Status.CANCELED,
    "incomplete_expired": Status.CANCELED,
}


def normalize_status(provider_status: str | None) -> Status | None:
    return PROVIDER_STATUS.get(provider_status or "")


def _insert_for(session: AsyncSession):
    bind = session.get_bind()
    dialect = getattr(getattr(bind, "dialect", None), "name", "")
    return sqlite_insert if dialect == "sqlite" else pg_insert


async def upsert_snapshot(
    session: AsyncSession,
    *,
    user_id: str,
    customer_id: str,
    snapshot: SubscriptionSnapshot,
    status: Status,
    plan: Plan,
    event_created: int,
) -> bool:
    """Write a full subscription snapshot. Returns False when the guards kept the stored row."""
    table = models.Subscription
    now = models.utcnow()
    insert = _insert_for(session)
    stmt = insert(table).values(
        id=str(uuid.uuid4()),
        user_id=user_id,
        provider_customer_id=customer_id,
        provider_subscription_id=snapshot.subscription_id,
        status=status.value,
        plan=plan.value,
        current_period_end=snapshot.current_period_end,
        trial_end=snapshot.trial_end,
        status_event_created=event_created,
        snapshot_event_created=event_created,
        created_at=now,
        updated_at=now,
    )
    new = stmt.excluded
    other_subscription = table.provider_subscription_id != new.provider_subscription_id
    status_is_newer = or_(
        other_subscription,
        table.status_event_created.is_(None),
        new.status_event_created >= table.status_event_created,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.user_id],
        set_={
            "provider_customer_id": new.provider_customer_id,
            "provider_subscription_id": new.provider_subscription_id,
            "status": case((status_is_newer, new.status), else_=table.status),
            "status_event_created": case((status_is_newer, new.status_event_created), else_=table.status_event_created),
            "plan": new.plan,
            "current_period_end": new.current_period_end,
            "trial_end": new.trial_end,
            "snapshot_event_created": new.snapshot_event_created,
            "updated_at": new.updated_at,
        },
        where=(
            (func.coalesce(table.snapshot_event_created, 0) <= new.snapshot_event_created)
            & (other_subscription | (table.status != Status.CANCELED.value))
        ),
    )
    res = await session.execute(stmt)
    return bool(res.rowcount)


async def set_status(
    session: AsyncSession,
    *,
    user_id: str,
    subscription_id: str,
    status: Status,
    event_created: int,
) -> Outcome:
    """Change only ``status`` on the user's row for this subscription."""
    table = models.Subscription
    stmt = (
        update(table)
        .where(
            table.user_id == user_id,
            table.provider_subscription_id == subscription_id,
            table.status != Status.CANCELED.value,
            or_(table.status_event_created.is_(None), table.status_event_created <= event_created),
        )
        .values(status=status.value, status_event_created=event_created, updated_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount:
        return Outcome.APPLIED

    q = select(table).where(table.user_id == user_id).execution_options(populate_existing=True)
    current = (await session.execute(q)).scalars().first()
    if current is None:
        logger.info("No subscription record for user %s; %s not applied", user_id, status.value)
        return Outcome.IGNORED
    if current.provider_subscription_id != subscription_id:
        logger.info(
            "Event for subscription %s does not match user %s's subscription %s",
            subscription_id,
            user_id,
            current.provider_subscription_id,
        )
        return Outcome.IGNORED
    if current.status == Status.CANCELED.value:
        if status is not Status.CANCELED:
            logger.info("Subscription %s is canceled; ignoring %s", subscription_id, status.value)
        return Outcome.IGNORED
    logger.info(
        "Stale event for subscription %s (event %s < stored %s)",
        subscription_id,
        event_created,
        current.status_event_created,
    )
    return Outcome.STALE


class SubscriptionReconciler:
    def __init__(self, classifier: PlanClassifier, gateway: PaymentGateway) -> None:
        self.classifier = classifier
        self.gateway = gateway

    async def _apply_snapshot(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        customer_id: str,
        snapshot: SubscriptionSnapshot,
        event_created: int,
    ) -> Outcome:
        if not snapshot.subscription_id:
            return Outcome.IGNORED
        try:
            plan = self.classifier.classify(snapshot.price_id)
        except UnknownPriceError:
            logger.error(
                "Subscription %s uses price %r, which is neither configured price; not recorded",
                snapshot.subscription_id,
                snapshot.price_id,
            )
            return Outcome.IGNORED
        status = normalize_status(snapshot.status)
        if status is None:
            logger.error("Subscription %s has unmapped status %r", snapshot.subscription_id, snapshot.status)
            return Outcome.IGNORED

        applied = await upsert_snapshot(
            session,
            user_id=user_id,
            customer_id=customer_id,
            snapshot=snapshot,
            status=status,
            plan=plan,
            event_created=event_created,
        )
        if not applied:
            logger.info("Snapshot for subscription %s superseded by stored state", snapshot.subscription_id)
            return Outcome.STALE
        logger.info("User %s subscription %s -> %s/%s", user_id, snapshot.subscription_id, status.value, plan.value)
        return Outcome.APPLIED

    async def checkout_completed(self, session: AsyncSession, event: CheckoutSessionCompleted) -> Outcome:
        if not event.customer_id:
            logger.info("Checkout session without a customer; nothing to link")
            return Outcome.IGNORED

        if event.user_id:
            profile = await session.get(models.UserProfile, event.user_id)
            if profile is None:
                logger.info("Checkout for unknown user %s (customer %s)", event.user_id, event.customer_id)
                return Outcome.UNRESOLVED
            await link_customer(session, event.user_id, event.customer_id)
            user_id = event.user_id
        else:
            user_id = await resolve_user_id(session, event.customer_id)
            if user_id is None:
                logger.info("Checkout for customer %s with no user", event.customer_id)
                return Outcome.UNRESOLVED

        if not event.subscription_id:
            return Outcome.IGNORED

        snapshot = await self.gateway.retrieve_subscription(event.subscription_id)
        return await self._apply_snapshot(
            session,
            user_id=user_id,
            customer_id=event.customer_id,
            snapshot=snapshot,
            event_created=event.created_at,
        )

    async def subscription_changed(self, session: AsyncSession, event: SubscriptionChanged) -> Outcome:
        snapshot = event.snapshot
        if snapshot is None or not snapshot.subscription_id or not snapshot.customer_id:
            return Outcome.IGNORED
        user_id = await resolve_user_id(session, snapshot.customer_id)
        if user_id is None:
            logger.info("No user for customer %s (%s)", snapshot.customer_id, event.event_type)
            return Outcome.UNRESOLVED
        return await self._apply_snapshot(
            session,
            user_id=user_id,
            customer_id=snapshot.customer_id,
            snapshot=snapshot,
            event_created=event.created_at,
        )

    async def _status_event(
        self,
        session: AsyncSession,
        *,
        customer_id: str | None,
        subscription_id: str | None,
        status: Status,
        event_created: int,
    ) -> Outcome:
        if not subscription_id:
            return Outcome.IGNORED
        user_id = await resolve_user_id(session, customer_id)
        if user_id is None:
            logger.info("No user for customer %s (subscription %s)", customer_id, subscription_id)
            return Outcome.UNRESOLVED
        outcome = await set_status(
            session,
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            event_created=event_created,
        )
        if outcome is Outcome.APPLIED:
            logger.info("User %s subscription %s -> %s", user_id, subscription_id, status.value)
        return outcome

    async def subscription_deleted(self, session: AsyncSession, event: SubscriptionDeleted) -> Outcome:
        return await self._status_event(
            session,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=Status.CANCELED,
            event_created=event.created_at,
        )

    async def invoice_paid(self, session: AsyncSession, event: InvoicePaymentSucceeded) -> Outcome:
        return await self._status_event(
            session,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=Status.ACTIVE,
            event_created=event.created_at,
        )

    async def invoice_failed(self, session: AsyncSession, event: InvoicePaymentFailed) -> Outcome:
        return await self._status_event(
            session,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=Status.PAST_DUE,
            event_created=event.created_at,
        )
