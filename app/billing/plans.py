"""
Plan catalogue.

Three monthly plans, cheapest first. Each tier maps to one Stripe Price
configured in settings (STRIPE_PRICE_STARTER, STRIPE_PRICE_PROFESSIONAL,
STRIPE_PRICE_PREMIUM); the tier of a gateway subscription is derived from
its price id.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from django.conf import settings

from billing.state_machines import SubscriptionTier


@dataclass(frozen=True)
class Plan:
    tier: str
    name: str
    price_cents: int
    currency: str = "usd"
    interval: str = "month"
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def stripe_price_id(self) -> str:
        return price_id_for_tier(self.tier)

    @property
    def rank(self) -> int:
        return SubscriptionTier.rank(self.tier)


PLANS: dict[str, Plan] = {
    SubscriptionTier.STARTER.value: Plan(
        tier=SubscriptionTier.STARTER.value,
        name="Starter",
        price_cents=999,
        features=("1 project", "Community support"),
    ),
    SubscriptionTier.PROFESSIONAL.value: Plan(
        tier=SubscriptionTier.PROFESSIONAL.value,
        name="Professional",
        price_cents=2999,
        features=("10 projects", "Email support", "Usage analytics"),
    ),
    SubscriptionTier.PREMIUM.value: Plan(
        tier=SubscriptionTier.PREMIUM.value,
        name="Premium",
        price_cents=7999,
        features=("Unlimited projects", "Priority support", "Usage analytics", "SSO"),
    ),
}

_PRICE_SETTINGS = {
    SubscriptionTier.STARTER.value: "STRIPE_PRICE_STARTER",
    SubscriptionTier.PROFESSIONAL.value: "STRIPE_PRICE_PROFESSIONAL",
    SubscriptionTier.PREMIUM.value: "STRIPE_PRICE_PREMIUM",
}


def list_plans() -> list[Plan]:
    return sorted(PLANS.values(), key=lambda plan: plan.rank)


def get_plan(tier: str) -> Plan:
    """Raises KeyError for an unknown tier."""
    return PLANS[str(tier)]


def price_id_for_tier(tier: str) -> str:
    return getattr(settings, _PRICE_SETTINGS[str(tier)])


def tier_for_price(price_id: str | None) -> str | None:
    """Tier whose configured Stripe price is ``price_id``, or None."""
    if not price_id:
        return None
    for tier, setting_name in _PRICE_SETTINGS.items():
        if getattr(settings, setting_name) == price_id:
            return str(tier)
    return None


def is_upgrade(current_tier: str, new_tier: str) -> bool:
    return SubscriptionTier.rank(new_tier) > SubscriptionTier.rank(current_tier)
