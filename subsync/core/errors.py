from __future__ import annotations


class SubsyncError(Exception):
    """Base class for errors raised by this service."""


class ConfigurationError(SubsyncError):
    """Missing or invalid configuration. Fatal at startup, never per request."""


class SignatureVerificationError(SubsyncError):
    """The webhook body could not be authenticated as coming from the provider."""


class UnknownPriceError(SubsyncError):
    def __init__(self, price_id: str | None) -> None:
        super().__init__(f"Unrecognized price id: {price_id!r}")
        self.price_id = price_id


class PaymentProviderError(SubsyncError):
    """A call to the payment provider's API failed."""
