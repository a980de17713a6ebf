"""
tiergate/models/lifecycle_event.py

Append-only audit record written by every lifecycle transition.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from tiergate.models.subscription import BillingPeriod, SubscriptionTier


class LifecycleEventType(str, Enum):
    ACTIVATED = "activated"
    RENEWED = "renewed"
    UPGRADED = "upgraded"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    PERIOD_CHANGE_SCHEDULED = "period_change_scheduled"
    SCHEDULED_CHANGE_CANCELLED = "scheduled_change_cancelled"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"


class LifecycleEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    event_type: LifecycleEventType
    previous_tier: Optional[SubscriptionTier] = None
    new_tier: Optional[SubscriptionTier] = None
    previous_billing_period: Optional[BillingPeriod] = None
    new_billing_period: Optional[BillingPeriod] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
