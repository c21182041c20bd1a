"""Typed webhook event envelopes.

Raw provider payloads are decoded into one variant per recognized event
type. Anything else becomes an ``UnrecognizedEvent`` that is only logged.
No business interpretation happens here: fields that are missing or shaped
unexpectedly simply come through as ``None``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str | None
    customer_id: str | None
    status: str | None
    price_id: str | None
    current_period_end: datetime | None
    trial_end: datetime | None


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str | None
    event_type: str
    created_at: int
    resource: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True)
class CheckoutSessionCompleted(WebhookEvent):
    customer_id: str | None = None
    subscription_id: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class SubscriptionChanged(WebhookEvent):
    snapshot: SubscriptionSnapshot | None = None


@dataclass(frozen=True)
class SubscriptionDeleted(WebhookEvent):
    customer_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True)
class InvoicePaymentSucceeded(WebhookEvent):
    customer_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True)
class InvoicePaymentFailed(WebhookEvent):
    customer_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True)
class UnrecognizedEvent(WebhookEvent):
    pass


def _get(obj: Any, key: str) -> Any:
    # SDK objects support item access but are not dicts and have no .get().
    if obj is None or isinstance(obj, (str, bytes)):
        return None
    try:
        return obj[key]
    except (KeyError, IndexError, TypeError):
        return None



def _id_of(value: Any) -> str | None:
    """Provider references are either a bare id or an expanded object."""
    if isinstance(value, str):
        return value or None
    ref = _get(value, "id")
    return ref if isinstance(ref, str) and ref else None


def _timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _first_item(subscription: Any) -> Any:
    data = _get(_get(subscription, "items"), "data")
    if isinstance(data, (list, tuple)) and data:
        return data[0]
    return None


def read_subscription(obj: Any) -> SubscriptionSnapshot:
    """Extract the fields the reconciler needs from a subscription object.

    Works on plain dicts from webhook payloads and on SDK objects returned by
    the API. ``current_period_end`` lives on the subscription in older API
    versions and on each subscription item in newer ones.
    """
    item = _first_item(obj)
    period_end = _get(obj, "current_period_end")
    if period_end is None:
        period_end = _get(item, "current_period_end")
    return SubscriptionSnapshot(
        subscription_id=_id_of(_get(obj, "id")),
        customer_id=_id_of(_get(obj, "customer")),
        status=_get(obj, "status"),
        price_id=_id_of(_get(item, "price")),
        current_period_end=_timestamp(period_end),
        trial_end=_timestamp(_get(obj, "trial_end")),
    )


def _invoice_subscription_id(invoice: Any) -> str | None:
    sub_id = _id_of(_get(invoice, "subscription"))
    if sub_id:
        return sub_id
    # Newer API versions nest the reference under parent.subscription_details.
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _id_of(_get(details, "subscription"))


def parse_event(raw: Mapping[str, Any]) -> WebhookEvent:
    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("event has no type")
    resource = _get(raw.get("data"), "object")
    if not isinstance(resource, Mapping):
        resource = {}
    created = raw.get("created")
    envelope = {
        "event_id": raw.get("id") if isinstance(raw.get("id"), str) else None,
        "event_type": event_type,
        "created_at": int(created) if isinstance(created, (int, float)) and not isinstance(created, bool) else 0,
        "resource": resource,
    }

    if event_type == CHECKOUT_SESSION_COMPLETED:
        metadata = _get(resource, "metadata")
        return CheckoutSessionCompleted(
            **envelope,
            customer_id=_id_of(_get(resource, "customer")),
            subscription_id=_id_of(_get(resource, "subscription")),
            user_id=_get(metadata, "user_id") or _get(resource, "client_reference_id"),
        )
    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return SubscriptionChanged(**envelope, snapshot=read_subscription(resource))
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            **envelope,
            customer_id=_id_of(_get(resource, "customer")),
            subscription_id=_id_of(_get(resource, "id")),
        )
    if event_type == INVOICE_PAYMENT_SUCCEEDED:
        return InvoicePaymentSucceeded(
            **envelope,
            customer_id=_id_of(_get(resource, "customer")),
            subscription_id=_invoice_subscription_id(resource),
        )
    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(
            **envelope,
            customer_id=_id_of(_get(resource, "customer")),
            subscription_id=_invoice_subscription_id(resource),
        )
    return UnrecognizedEvent(**envelope)
