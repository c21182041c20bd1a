from __future__ import annotations

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from subsync.core.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    # App
    app_name: str = "Subscription Sync"
    base_url: str
    environment: str = "dev"  # dev|prod
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://subsync:subsync@db:5432/subsync"

    # Payments (Stripe). No defaults: a missing value must stop the process.
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_price_id_monthly: str
    stripe_price_id_yearly: str
    stripe_api_version: str = "2023-10-16"
    stripe_request_timeout_seconds: float = 8.0

    # Webhooks
    webhook_tolerance_seconds: int = 300
    webhook_timeout_seconds: float = 10.0

    @field_validator(
        "base_url",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "stripe_price_id_monthly",
        "stripe_price_id_yearly",
    )
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _distinct_prices(self) -> Settings:
        if self.stripe_price_id_monthly == self.stripe_price_id_yearly:
            raise ValueError("stripe_price_id_monthly and stripe_price_id_yearly must differ")
        return self

    @model_validator(mode="after")
    def _request_timeout_within_webhook_budget(self) -> Settings:
        # A Stripe call runs in a worker thread that fail_after cannot interrupt.
        if self.stripe_request_timeout_seconds >= self.webhook_timeout_seconds:
            raise ValueError("stripe_request_timeout_seconds must be below webhook_timeout_seconds")
        return self


def load_settings(**overrides) -> Settings:
    """Read and validate configuration once at process start."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "settings" for err in exc.errors())
        raise ConfigurationError(f"Invalid configuration: {fields}") from exc
