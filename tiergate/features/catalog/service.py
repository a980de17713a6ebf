"""
tiergate/features/catalog/service.py

Tier catalog: the single source of truth for limits, pricing and features.

Pure lookups, no I/O. Inputs are closed enums validated at the API boundary;
string inputs are coerced so callers holding raw column values can use it too.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from tiergate.core.dates import add_months
from tiergate.models.subscription import (
    BillingPeriod,
    FeatureKey,
    FEATURE_RESOURCES,
    Resource,
    SubscriptionTier,
)


UNLIMITED = -1


@dataclass(frozen=True)
class TierConfig:
    tier: SubscriptionTier
    display_name: str
    limits: Dict[Resource, int]
    pricing: Dict[BillingPeriod, Decimal]
    highlights: Tuple[str, ...] = ()
    is_popular: bool = False
    features: FrozenSet[FeatureKey] = field(init=False)

    def __post_init__(self):
        # A feature is included whenever its resource is not capped at zero
        included = frozenset(
            feature
            for feature, resource in FEATURE_RESOURCES.items()
            if self.limits[resource] != 0
        )
        object.__setattr__(self, "features", included)


def _limits(per_core: int, contracts: int, ai_avatar: int) -> Dict[Resource, int]:
    return {
        Resource.APPLICATIONS: per_core,
        Resource.CVS: per_core,
        Resource.INTERVIEWS: per_core,
        Resource.COMPENSATION: per_core,
        Resource.CONTRACTS: contracts,
        Resource.AI_AVATAR_INTERVIEWS: ai_avatar,
    }


TIER_CONFIGS: Dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.MOMENTUM: TierConfig(
        tier=SubscriptionTier.MOMENTUM,
        display_name="Momentum",
        limits=_limits(8, 8, 0),
        pricing={
            BillingPeriod.MONTHLY: Decimal("12"),
            BillingPeriod.QUARTERLY: Decimal("30"),   # 17% off
            BillingPeriod.YEARLY: Decimal("99"),      # 31% off
        },
        highlights=(
            "8 Application Tracking",
            "8 Tailored CVs",
            "8 Interview Coach Sessions",
            "8 Compensation Sessions",
            "8 Contract Reviews",
        ),
    ),
    SubscriptionTier.ACCELERATE: TierConfig(
        tier=SubscriptionTier.ACCELERATE,
        display_name="Accelerate",
        limits=_limits(15, 15, 5),
        pricing={
            BillingPeriod.MONTHLY: Decimal("18"),
            BillingPeriod.QUARTERLY: Decimal("45"),   # 17% off
            BillingPeriod.YEARLY: Decimal("149"),     # 31% off
        },
        highlights=(
            "15 Application Tracking",
            "15 Tailored CVs",
            "15 Interview Coach Sessions",
            "15 Compensation Sessions",
            "15 Contract Reviews",
            "5 AI Avatar Interviews",
        ),
        is_popular=True,
    ),
    SubscriptionTier.ELITE: TierConfig(
        tier=SubscriptionTier.ELITE,
        display_name="Elite",
        limits=_limits(UNLIMITED, UNLIMITED, 10),
        pricing={
            BillingPeriod.MONTHLY: Decimal("29"),
            BillingPeriod.QUARTERLY: Decimal("75"),   # 14% off
            BillingPeriod.YEARLY: Decimal("249"),     # 28% off
        },
        highlights=(
            "Unlimited Application Tracking",
            "Unlimited Tailored CVs",
            "Unlimited Interview Coach Sessions",
            "Unlimited Compensation Sessions",
            "Unlimited Contract Reviews",
            "10 AI Avatar Interviews",
        ),
    ),
}

# Tier order for upgrade/downgrade logic
TIER_ORDER: List[SubscriptionTier] = [
    SubscriptionTier.MOMENTUM,
    SubscriptionTier.ACCELERATE,
    SubscriptionTier.ELITE,
]

PERIOD_MONTHS: Dict[BillingPeriod, int] = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
    BillingPeriod.YEARLY: 12,
}

# Shortest to longest
PERIOD_ORDER: List[BillingPeriod] = [
    BillingPeriod.MONTHLY,
    BillingPeriod.QUARTERLY,
    BillingPeriod.YEARLY,
]


TierLike = Union[SubscriptionTier, str]
PeriodLike = Union[BillingPeriod, str]


def get_tier_config(tier: TierLike) -> TierConfig:
    return TIER_CONFIGS[SubscriptionTier(tier)]


def limits(tier: TierLike) -> Dict[Resource, int]:
    return dict(get_tier_config(tier).limits)


def limit_for(tier: TierLike, resource: Union[Resource, str]) -> int:
    return get_tier_config(tier).limits[Resource(resource)]


def price(tier: TierLike, period: PeriodLike) -> Decimal:
    return get_tier_config(tier).pricing[BillingPeriod(period)]


def has_feature(tier: TierLike, feature: Union[FeatureKey, str]) -> bool:
    return FeatureKey(feature) in get_tier_config(tier).features


def tier_rank(tier: TierLike) -> int:
    return TIER_ORDER.index(SubscriptionTier(tier))


def is_upgrade(old_tier: TierLike, new_tier: TierLike) -> bool:
    return tier_rank(new_tier) > tier_rank(old_tier)


def is_downgrade(old_tier: TierLike, new_tier: TierLike) -> bool:
    return tier_rank(new_tier) < tier_rank(old_tier)


def all_tiers() -> List[SubscriptionTier]:
    """All tiers, lowest to highest."""
    return list(TIER_ORDER)


def lowest_tier() -> SubscriptionTier:
    return TIER_ORDER[0]


def highest_tier() -> SubscriptionTier:
    return TIER_ORDER[-1]


def longest_period() -> BillingPeriod:
    return PERIOD_ORDER[-1]


def period_months(period: PeriodLike) -> int:
    return PERIOD_MONTHS[BillingPeriod(period)]


def period_end(start: datetime, period: PeriodLike) -> datetime:
    """End of a billing period starting at `start` (1, 3 or 12 calendar months)."""
    return add_months(start, period_months(period))


def savings_percentage(tier: TierLike, period: PeriodLike) -> int:
    """Whole-percent discount of a period price against paying monthly."""
    period = BillingPeriod(period)
    if period == BillingPeriod.MONTHLY:
        return 0
    monthly = price(tier, BillingPeriod.MONTHLY)
    full_price = monthly * period_months(period)
    ratio = (full_price - price(tier, period)) / full_price * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_valid_tier(value: Optional[str]) -> bool:
    return bool(value) and value in {t.value for t in SubscriptionTier}


def is_valid_billing_period(value: Optional[str]) -> bool:
    return bool(value) and value in {p.value for p in BillingPeriod}
