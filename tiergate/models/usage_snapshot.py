"""
tiergate/models/usage_snapshot.py

Monthly usage history used for recommendations and trends.
"""

from datetime import date
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from tiergate.models.subscription import BillingPeriod, Resource, SubscriptionTier


class MonthlySnapshot(BaseModel):
    """
    Historical counters for one (user, month). month is the first of the month.

    Never read by entitlement checks.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    month: date
    usage: Dict[Resource, int]
    tier_at_snapshot: Optional[SubscriptionTier] = None
    billing_period_at_snapshot: Optional[BillingPeriod] = None


class UsageAverages(BaseModel):
    model_config = ConfigDict(frozen=True)

    averages: Dict[Resource, float]
    months_tracked: int

    def average(self, resource: Resource) -> float:
        return self.averages.get(resource, 0.0)
