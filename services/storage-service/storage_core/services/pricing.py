# services/storage-service/storage_core/services/pricing.py
"""Subscription pricing tiers (read-only configuration)"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

GB = 1024 ** 3
UNLIMITED = math.inf

# Paid tiers must keep a profit margin of £2-£100
MIN_PAID_MARGIN = 200
MAX_PAID_MARGIN = 10000


@dataclass(frozen=True)
class PricingTier:
    tier_id: str
    price_minor_units: int  # pence
    storage_limit_bytes: float  # math.inf for unlimited
    profit_margin_minor_units: int

    @property
    def is_free(self) -> bool:
        return self.price_minor_units == 0


SUBSCRIPTION_TIERS: Dict[str, PricingTier] = {
    tier.tier_id: tier for tier in (
        PricingTier("free", 0, 5 * GB, 0),
        PricingTier("50gb", 499, 50 * GB, 250),
        PricingTier("100gb", 899, 100 * GB, 500),
        PricingTier("200gb", 1499, 200 * GB, 800),
        PricingTier("500gb", 2999, 500 * GB, 1500),
        PricingTier("1tb", 4999, 1024 * GB, 2500),
        PricingTier("2tb", 7999, 2048 * GB, 4000),
        PricingTier("unlimited", 9999, UNLIMITED, 10000),
    )
}


def ordered_tiers() -> List[PricingTier]:
    return sorted(SUBSCRIPTION_TIERS.values(), key=lambda t: t.storage_limit_bytes)


def validate_tiers(tiers: Optional[List[PricingTier]] = None) -> None:
    """Raise ValueError if the tier table breaks the margin or ordering policy"""
    tiers = sorted(tiers or SUBSCRIPTION_TIERS.values(), key=lambda t: t.storage_limit_bytes)
    previous = None
    for tier in tiers:
        if tier.profit_margin_minor_units < 0:
            raise ValueError(f"{tier.tier_id}: negative profit margin")
        if not tier.is_free and not (
            MIN_PAID_MARGIN <= tier.profit_margin_minor_units <= MAX_PAID_MARGIN
        ):
            raise ValueError(
                f"{tier.tier_id}: margin {tier.profit_margin_minor_units} outside "
                f"[{MIN_PAID_MARGIN}, {MAX_PAID_MARGIN}]"
            )
        if previous is not None and tier.price_minor_units < previous.price_minor_units:
            raise ValueError(f"{tier.tier_id}: price decreases after {previous.tier_id}")
        previous = tier


def get_tier(tier_id: str) -> Optional[PricingTier]:
    return SUBSCRIPTION_TIERS.get(tier_id)


def profit_margin(tier_id: str) -> int:
    """Profit margin in pence for a tier, 0 for unknown tiers"""
    tier = get_tier(tier_id)
    return tier.profit_margin_minor_units if tier else 0


def tier_for_storage(size_bytes: int) -> PricingTier:
    """Smallest tier whose limit covers size_bytes"""
    for tier in ordered_tiers():
        if tier.storage_limit_bytes >= size_bytes:
            return tier
    return SUBSCRIPTION_TIERS["unlimited"]


def format_price(pence: int) -> str:
    return f"£{pence / 100:.2f}"


async def check_subscription_pricing(repository) -> int:
    """Log each active subscription against the tier table. Nothing is written. Returns the count."""
    subscriptions = await repository.active_subscriptions()
    logger.info(f"[Pricing] Checking {len(subscriptions)} active subscriptions")

    for sub in subscriptions:
        tier = get_tier(sub.tier)
        if tier is None:
            logger.warning(f"[Pricing] Subscription {sub.id} has unknown tier '{sub.tier}'")
            continue
        logger.info(
            f"[Pricing] Subscription {sub.id} ({sub.tier}): {format_price(tier.price_minor_units)}/month "
            f"(Profit: {format_price(tier.profit_margin_minor_units)})"
        )

    return len(subscriptions)
