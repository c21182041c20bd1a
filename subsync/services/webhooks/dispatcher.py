from __future__ import annotations

import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from subsync.services.subscriptions.service import Outcome, SubscriptionReconciler
from subsync.services.webhooks import ledger
from subsync.services.webhooks.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, WebhookEvent], Awaitable[Outcome]]


class WebhookDispatcher:
    """Routes parsed events to the reconciler. Unrecognized types are acknowledged."""

    def __init__(self, reconciler: SubscriptionReconciler) -> None:
        self.handlers: dict[type[WebhookEvent], Handler] = {
            CheckoutSessionCompleted: reconciler.checkout_completed,
            SubscriptionChanged: reconciler.subscription_changed,
            SubscriptionDeleted: reconciler.subscription_deleted,
            InvoicePaymentSucceeded: reconciler.invoice_paid,
            InvoicePaymentFailed: reconciler.invoice_failed,
        }

    async def dispatch(self, session: AsyncSession, event: WebhookEvent) -> Outcome:
        handler = self.handlers.get(type(event))
        if handler is None:
            logger.info("Unhandled event type: %s (%s)", event.event_type, event.event_id)
            return Outcome.IGNORED
        return await handler(session, event)

    async def handle(self, session: AsyncSession, event: WebhookEvent) -> Outcome:
        """Dispatch once per provider event id. The caller commits."""
        if await ledger.already_processed(session, event.event_id):
            logger.info("Duplicate delivery of %s (%s)", event.event_id, event.event_type)
            return Outcome.DUPLICATE
        outcome = await self.dispatch(session, event)
        # Unresolved events stay unrecorded so a manual resend can apply them once the user is linked.
        if outcome is not Outcome.UNRESOLVED:
            await ledger.record_processed(session, event, outcome.value)
        return outcome
