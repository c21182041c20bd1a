from __future__ import annotations

from enum import Enum

from subsync.core.errors import ConfigurationError, UnknownPriceError


class Plan(str, Enum):
    PREMIUM_MONTHLY = "premium_monthly"
    PREMIUM_YEARLY = "premium_yearly"


class PlanClassifier:
    """Maps the two configured price ids to plan tiers.

    Built once at startup; bad configuration fails here rather than on the
    first webhook.
    """

    def __init__(self, monthly_price_id: str, yearly_price_id: str) -> None:
        if not monthly_price_id or not yearly_price_id:
            raise ConfigurationError("Both monthly and yearly price ids must be configured")
        if monthly_price_id == yearly_price_id:
            raise ConfigurationError("Monthly and yearly price ids must differ")
        self._plans: dict[str, Plan] = {
            monthly_price_id: Plan.PREMIUM_MONTHLY,
            yearly_price_id: Plan.PREMIUM_YEARLY,
        }
        self._prices: dict[Plan, str] = {plan: price for price, plan in self._plans.items()}

    def classify(self, price_id: str | None) -> Plan:
        plan = self._plans.get(price_id or "")
        if plan is None:
            raise UnknownPriceError(price_id)
        return plan

    def price_for(self, plan: Plan) -> str:
        return self._prices[plan]
