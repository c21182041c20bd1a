from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import anyio
import stripe

from subsync.core.errors import PaymentProviderError
from subsync.services.webhooks.events import SubscriptionSnapshot, read_subscription

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    session_id: str
    url: str


class PaymentGateway:
    """Thin async wrapper around one explicitly configured Stripe client.

    The SDK is synchronous, so every call runs in a worker thread.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        api_version: str | None = None,
        timeout_seconds: float = 8.0,
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = stripe.StripeClient(
                secret_key,
                stripe_version=api_version,
                max_network_retries=0,
                http_client=stripe.new_default_http_client(timeout=timeout_seconds),
            )
        self.client = client

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        try:
            return await anyio.to_thread.run_sync(_sync_call)
        except stripe.StripeError as exc:
            raise PaymentProviderError(exc.user_message or str(exc)) from exc

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
    ) -> CheckoutResult:
        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id},
        }
        if customer_id:
            # Reuse the linked customer instead of letting Stripe create another.
            params["customer"] = customer_id
        session = await self._call(self.client.checkout.sessions.create, params=params)
        logger.info("Created checkout session %s for user %s", session.id, user_id)
        return CheckoutResult(session_id=session.id, url=session.url)

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        session = await self._call(
            self.client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return session.url

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        subscription = await self._call(self.client.subscriptions.retrieve, subscription_id)
        return read_subscription(subscription)
