"""
tiergate/features/recommendations/service.py

Usage-driven tier recommendation.

Averages every monthly snapshot a user has, then picks the lowest tier that
covers each resource and recommends the highest of those, billed yearly.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Tuple

from sqlalchemy import select

from tiergate.core.database import get_db_session, usage_monthly_snapshots
from tiergate.features.catalog import service as catalog
from tiergate.features.catalog.service import UNLIMITED
from tiergate.features.subscriptions.mapping import snapshot_from_row
from tiergate.models.subscription import BillingPeriod, Resource, SubscriptionTier
from tiergate.models.usage_snapshot import UsageAverages


RESOURCE_NAMES: Dict[Resource, str] = {
    Resource.APPLICATIONS: "applications",
    Resource.CVS: "CVs",
    Resource.INTERVIEWS: "interview sessions",
    Resource.COMPENSATION: "compensation analyses",
    Resource.CONTRACTS: "contract reviews",
    Resource.AI_AVATAR_INTERVIEWS: "AI avatar interviews",
}


@dataclass(frozen=True)
class ResourceComparison:
    average: float
    limits: Dict[SubscriptionTier, int]
    fits_in: SubscriptionTier


@dataclass(frozen=True)
class SavingsComparison:
    monthly: Decimal
    quarterly: Decimal
    yearly: Decimal
    monthly_savings: Decimal
    quarterly_savings: Decimal
    yearly_savings: Decimal


@dataclass(frozen=True)
class TierRecommendation:
    recommended_tier: SubscriptionTier
    recommended_billing_period: BillingPeriod
    comparison: Dict[Resource, ResourceComparison]
    savings: SavingsComparison
    reason: str
    months_tracked: int


def round_one_decimal(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def get_usage_averages(user_id: str) -> UsageAverages:
    """Mean of each resource over all of the user's snapshots, to 1 decimal (half-up)."""
    with get_db_session() as session:
        rows = session.execute(
            select(usage_monthly_snapshots).where(usage_monthly_snapshots.c.user_id == user_id)
        ).all()
    snapshots = [snapshot_from_row(row) for row in rows]

    if not snapshots:
        return UsageAverages(averages={resource: 0.0 for resource in Resource}, months_tracked=0)

    months = len(snapshots)
    averages = {}
    for resource in Resource:
        total = sum(snapshot.usage.get(resource, 0) for snapshot in snapshots)
        averages[resource] = round_one_decimal(Decimal(total) / Decimal(months))
    return UsageAverages(averages=averages, months_tracked=months)


def lowest_tier_that_fits(resource: Resource, average: float) -> SubscriptionTier:
    if average == 0:
        return catalog.lowest_tier()
    for tier in catalog.all_tiers():
        limit = catalog.limit_for(tier, resource)
        if limit == UNLIMITED:
            return tier
        # Zero means the tier does not offer the resource at all
        if limit == 0:
            continue
        if average <= limit:
            return tier
    return catalog.highest_tier()


def build_savings(tier: SubscriptionTier) -> SavingsComparison:
    monthly = catalog.price(tier, BillingPeriod.MONTHLY)
    quarterly = catalog.price(tier, BillingPeriod.QUARTERLY)
    yearly = catalog.price(tier, BillingPeriod.YEARLY)
    annual_at_monthly = monthly * 12
    return SavingsComparison(
        monthly=monthly,
        quarterly=quarterly,
        yearly=yearly,
        monthly_savings=Decimal("0"),
        quarterly_savings=annual_at_monthly - quarterly * 4,
        yearly_savings=annual_at_monthly - yearly,
    )


def _format_average(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"


def _top_resources(comparison: Dict[Resource, ResourceComparison], count: int = 2) -> List[Tuple[Resource, float]]:
    used = [(resource, data.average) for resource, data in comparison.items() if data.average > 0]
    # sorted() is stable, so equal averages keep Resource declaration order
    return sorted(used, key=lambda item: item[1], reverse=True)[:count]


def build_reason(averages: UsageAverages, tier: SubscriptionTier, comparison: Dict[Resource, ResourceComparison]) -> str:
    tier_name = catalog.get_tier_config(tier).display_name
    months = averages.months_tracked

    if months == 0:
        return f"We recommend {tier_name} as a great starting point."

    top = _top_resources(comparison)

    if months == 1:
        if not top:
            return f"Based on your first month, {tier_name} is a good fit for your needs."
        resource, average = top[0]
        return (
            f"Based on your first month, you're using about {_format_average(average)} "
            f"{RESOURCE_NAMES[resource]}. The {tier_name} plan covers your needs."
        )

    prefix = f"Based on {months} months of activity"
    if not top:
        return f"{prefix}, {tier_name} is a great fit for your usage pattern."
    if len(top) == 1:
        resource, average = top[0]
        return (
            f"{prefix}, you average {_format_average(average)} {RESOURCE_NAMES[resource]}. "
            f"The {tier_name} plan covers all your needs."
        )
    (first, first_avg), (second, second_avg) = top
    return (
        f"{prefix}, you average {_format_average(first_avg)} {RESOURCE_NAMES[first]} and "
        f"{_format_average(second_avg)} {RESOURCE_NAMES[second]}. The {tier_name} plan covers all your needs."
    )


def get_recommendation(averages: UsageAverages) -> TierRecommendation:
    """Pure: same averages in, same recommendation out."""
    comparison: Dict[Resource, ResourceComparison] = {}
    required = catalog.lowest_tier()

    for resource in Resource:
        average = averages.average(resource)
        fits_in = lowest_tier_that_fits(resource, average)
        comparison[resource] = ResourceComparison(
            average=average,
            limits={tier: catalog.limit_for(tier, resource) for tier in catalog.all_tiers()},
            fits_in=fits_in,
        )
        if catalog.tier_rank(fits_in) > catalog.tier_rank(required):
            required = fits_in

    return TierRecommendation(
        recommended_tier=required,
        recommended_billing_period=catalog.longest_period(),
        comparison=comparison,
        savings=build_savings(required),
        reason=build_reason(averages, required, comparison),
        months_tracked=averages.months_tracked,
    )
