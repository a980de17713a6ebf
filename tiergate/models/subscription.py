"""
tiergate/models/subscription.py

Subscription domain types.

SubscriptionRecord is the typed domain view of a user_subscriptions row. The
storage shape (snake_case columns, six flat usage_* counters) lives only in
tiergate/features/subscriptions/mapping.py.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionTier(str, Enum):
    """Tiers in ascending order: momentum < accelerate < elite."""
    MOMENTUM = "momentum"
    ACCELERATE = "accelerate"
    ELITE = "elite"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """
    - active: current and paid
    - cancelled: user cancelled, access until cancellation_effective_at
    - past_due: payment failed, grace period running from current_period_end
    - expired: no access
    """
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class Resource(str, Enum):
    """Metered resources. Declaration order breaks ties in recommendations."""
    APPLICATIONS = "applications"
    CVS = "cvs"
    INTERVIEWS = "interviews"
    COMPENSATION = "compensation"
    CONTRACTS = "contracts"
    AI_AVATAR_INTERVIEWS = "ai_avatar_interviews"


class FeatureKey(str, Enum):
    APPLICATION_TRACKER = "application_tracker"
    TAILORED_CVS = "tailored_cvs"
    INTERVIEW_COACH = "interview_coach"
    COMPENSATION_SESSIONS = "compensation_sessions"
    CONTRACT_REVIEWS = "contract_reviews"
    AI_AVATAR_INTERVIEWS = "ai_avatar_interviews"


FEATURE_RESOURCES: Dict[FeatureKey, Resource] = {
    FeatureKey.APPLICATION_TRACKER: Resource.APPLICATIONS,
    FeatureKey.TAILORED_CVS: Resource.CVS,
    FeatureKey.INTERVIEW_COACH: Resource.INTERVIEWS,
    FeatureKey.COMPENSATION_SESSIONS: Resource.COMPENSATION,
    FeatureKey.CONTRACT_REVIEWS: Resource.CONTRACTS,
    FeatureKey.AI_AVATAR_INTERVIEWS: Resource.AI_AVATAR_INTERVIEWS,
}


def empty_usage() -> Dict[Resource, int]:
    return {resource: 0 for resource in Resource}


class PaymentReferences(BaseModel):
    """Opaque tokens handed back by the payment gateway."""
    model_config = ConfigDict(frozen=True)

    transaction_token: Optional[str] = None
    recurring_id: Optional[str] = None
    transaction_code: Optional[str] = None


class SubscriptionRecord(BaseModel):
    """
    One per user, never deleted.

    tier is None for tracking-only users: usage is metered, but no
    entitlement is granted while enforcement is on.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Optional[SubscriptionTier] = None
    billing_period: Optional[BillingPeriod] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_effective_at: Optional[datetime] = None
    scheduled_tier_change: Optional[SubscriptionTier] = None
    scheduled_billing_period_change: Optional[BillingPeriod] = None
    usage: Dict[Resource, int] = Field(default_factory=empty_usage)
    last_reset_at: datetime
    grow_transaction_token: Optional[str] = None
    grow_recurring_id: Optional[str] = None
    grow_last_transaction_code: Optional[str] = None
    morning_customer_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_tracking_only(self) -> bool:
        return self.tier is None

    def used(self, resource: Resource) -> int:
        return self.usage.get(resource, 0)
