"""Builders for provider-shaped payloads used across the test modules."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from uuid import uuid4

WEBHOOK_SECRET = "whsec_test_secret"
MONTHLY_PRICE = "price_monthly_test"
YEARLY_PRICE = "price_yearly_test"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way the provider does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event(event_type: str, obj: dict, *, created: int = 1_700_000_000, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def encode(evt: dict) -> bytes:
    return json.dumps(evt, separators=(",", ":")).encode("utf-8")


def subscription_obj(
    *,
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    price: str = MONTHLY_PRICE,
    period_end: int | None = 1_700_000_000,
    trial_end: int | None = None,
) -> dict:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "trial_end": trial_end,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price, "object": "price"}}]},
    }


def checkout_obj(*, customer: str = "cus_1", subscription: str | None = "sub_1", user_id: str | None = "u1") -> dict:
    obj = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "subscription": subscription,
        "metadata": {},
    }
    if user_id:
        obj["metadata"]["user_id"] = user_id
    return obj


def invoice_obj(*, customer: str = "cus_1", subscription: str | None = "sub_1") -> dict:
    return {"id": "in_1", "object": "invoice", "customer": customer, "subscription": subscription}


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def ts(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)
