from __future__ import annotations

import json

import stripe

from subsync.core.errors import SignatureVerificationError
from subsync.services.webhooks.events import WebhookEvent, parse_event


def verify_signature(payload: bytes, sig_header: str | None, secret: str, tolerance: int = 300) -> str:
    """Check the provider signature over the exact raw body. Returns the body as text."""
    if not sig_header:
        raise SignatureVerificationError("Missing signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureVerificationError("Payload is not valid UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureVerificationError(str(exc) or "Invalid signature") from exc
    return text


def construct_event(payload: bytes, sig_header: str | None, secret: str, tolerance: int = 300) -> WebhookEvent:
    text = verify_signature(payload, sig_header, secret, tolerance)
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise SignatureVerificationError("Malformed event payload") from exc
    if not isinstance(raw, dict):
        raise SignatureVerificationError("Malformed event payload")
    try:
        return parse_event(raw)
    except ValueError as exc:
        raise SignatureVerificationError(f"Malformed event payload: {exc}") from exc
